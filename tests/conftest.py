"""Shared fakes for export tool tests.

The export client, sweeper and lease store are replaced by in-memory
fakes so orchestration and election can be driven deterministically.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from datetime import timedelta
from datetime import timezone

import pytest

from dgraph_export.cleanup import SweepResult
from dgraph_export.errors import CleanupFailure
from dgraph_export.export import ExportOutput
from dgraph_export.export import ExportStatus
from dgraph_export.lease import LeaseRecord


def make_output(files: list[str] | None = None) -> ExportOutput:
    return ExportOutput(
        response=ExportStatus(message="Export completed.", code="Success"),
        exported_files=files or [],
    )


class FakeExporter:
    """Export client double that can be held open with a gate."""

    def __init__(self, files: list[str] | None = None, error: Exception | None = None):
        self.files = files or []
        self.error = error
        self.gate: asyncio.Event | None = None
        self.started = asyncio.Event()
        self.calls = 0
        self.active = 0
        self.max_active = 0

    def hold(self) -> asyncio.Event:
        self.gate = asyncio.Event()
        return self.gate

    async def export(self) -> ExportOutput:
        self.calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.started.set()
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.error is not None:
                raise self.error
            return make_output(self.files)
        finally:
            self.active -= 1


class FakeSweeper:
    def __init__(self, removed=None, error: CleanupFailure | None = None):
        self.removed = removed or []
        self.error = error
        self.calls = 0

    async def asweep(self) -> SweepResult:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return SweepResult(removed=list(self.removed))


class InMemoryLeaseStore:
    """Lease store with the same compare-and-swap rules as SQLiteLeaseStore."""

    def __init__(self):
        self.records: dict[str, LeaseRecord] = {}
        self.fail = False
        self.released: list[tuple[str, str]] = []
        self.initialized = False

    async def initialize(self) -> None:
        self.initialized = True

    async def try_acquire_or_renew(self, name, identity, ttl, now=None) -> bool:
        if self.fail:
            raise RuntimeError("lease store unavailable")
        now = now or datetime.now(timezone.utc)
        current = self.records.get(name)
        if current is not None and current.holder not in (None, identity) and current.is_valid(now):
            return False
        same = current is not None and current.holder == identity
        self.records[name] = LeaseRecord(
            name=name,
            holder=identity,
            acquired_at=current.acquired_at if same else now,
            renewed_at=now,
            expires_at=now + timedelta(seconds=ttl),
            transitions=(current.transitions if same else current.transitions + 1) if current else 0,
        )
        return True

    async def release(self, name, identity) -> bool:
        current = self.records.get(name)
        if current is None or current.holder != identity:
            return False
        now = datetime.now(timezone.utc)
        self.records[name] = LeaseRecord(
            name=name,
            holder=None,
            acquired_at=current.acquired_at,
            renewed_at=now,
            expires_at=now,
            transitions=current.transitions,
        )
        self.released.append((name, identity))
        return True

    async def get(self, name) -> LeaseRecord | None:
        if self.fail:
            raise RuntimeError("lease store unavailable")
        return self.records.get(name)

    def hold(self, name: str, identity: str, ttl: float = 60.0) -> None:
        """Force `identity` to hold the lease."""
        now = datetime.now(timezone.utc)
        self.records[name] = LeaseRecord(
            name=name,
            holder=identity,
            acquired_at=now,
            renewed_at=now,
            expires_at=now + timedelta(seconds=ttl),
            transitions=0,
        )


class RecordingListener:
    def __init__(self):
        self.events: list[tuple[str, str | None]] = []

    def on_leadership_gained(self) -> None:
        self.events.append(("gained", None))

    def on_leadership_lost(self, new_leader: str | None = None) -> None:
        self.events.append(("lost", new_leader))


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll until predicate() is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("condition not reached before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture
def lease_store():
    return InMemoryLeaseStore()
