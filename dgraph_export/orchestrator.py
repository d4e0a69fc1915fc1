"""Export orchestration: leadership gating, triggers and exclusivity.

State machine (per process):
- FOLLOWER (initial, and after leadership is lost): timer ticks are dropped
- LEADER (after leadership is gained): each tick starts an export if none is
  in flight

Two trigger paths share one exclusivity token:
- Timer ticks run only as LEADER; a tick that finds the token held is
  dropped, never queued
- On-demand requests run regardless of leadership; a request that finds
  the token held fails immediately with Busy

Each invocation is: acquire token, export, sweep temp dirs (if configured),
release token. Losing leadership does not abort an export in flight.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import Counter
from collections import deque
from dataclasses import dataclass
from dataclasses import field
from datetime import UTC
from datetime import datetime
from enum import Enum
from typing import Any
from typing import Protocol

from dgraph_export.cleanup import SweepResult
from dgraph_export.errors import Busy
from dgraph_export.errors import CleanupFailure
from dgraph_export.errors import ExportError
from dgraph_export.errors import TransportFailure
from dgraph_export.export import ExportOutput

logger = logging.getLogger(__name__)

SHUTDOWN_GRACE_SECONDS = 5.0


class OrchestratorState(str, Enum):
    FOLLOWER = "follower"
    LEADER = "leader"


class Trigger(str, Enum):
    TIMER = "timer"
    ON_DEMAND = "on_demand"


class Exporter(Protocol):
    async def export(self) -> ExportOutput: ...


class Sweeper(Protocol):
    async def asweep(self) -> SweepResult: ...


@dataclass
class Invocation:
    """One export attempt. Transient; kept only in the in-memory history."""

    trigger: Trigger
    started_at: datetime
    finished_at: datetime | None = None
    output: ExportOutput | None = None
    error: ExportError | None = None
    cleanup_error: CleanupFailure | None = None
    removed: list[str] = field(default_factory=list)

    @property
    def finished(self) -> bool:
        return self.finished_at is not None

    @property
    def succeeded(self) -> bool:
        return self.finished and self.error is None and self.output is not None

    @property
    def files(self) -> list[str]:
        return self.output.files if self.output else []

    @property
    def duration_ms(self) -> int | None:
        if self.finished_at is None:
            return None
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    def to_dict(self) -> dict[str, Any]:
        if not self.finished:
            status = "running"
        else:
            status = "success" if self.succeeded else "failure"
        return {
            "trigger": self.trigger.value,
            "status": status,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_ms": self.duration_ms,
            "files": self.files,
            "error": str(self.error) if self.error else None,
            "error_type": type(self.error).__name__ if self.error else None,
            "cleanup_error": str(self.cleanup_error) if self.cleanup_error else None,
            "removed": self.removed,
        }


class ExclusivityToken:
    """Non-reentrant in-process guard: at most one export at a time."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def try_acquire(self) -> bool:
        return self._lock.acquire(blocking=False)

    def release(self) -> None:
        self._lock.release()

    @property
    def held(self) -> bool:
        return self._lock.locked()


class Orchestrator:
    """Decides whether and when exports run, and serializes them."""

    def __init__(
        self,
        invoker: Exporter,
        sweeper: Sweeper | None = None,
        *,
        cleanup_on_failure: bool = False,
        history_size: int = 20,
    ):
        self.invoker = invoker
        self.sweeper = sweeper
        self.cleanup_on_failure = cleanup_on_failure

        self._state = OrchestratorState.FOLLOWER
        self._leader: str | None = None
        self._token = ExclusivityToken()
        self._current: Invocation | None = None
        self._inflight: asyncio.Task | None = None
        self._stopping = False

        self.history: deque[Invocation] = deque(maxlen=history_size)
        self.counters: Counter[str] = Counter()

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def is_leader(self) -> bool:
        return self._state is OrchestratorState.LEADER

    @property
    def in_flight(self) -> bool:
        return self._token.held

    # --- Leadership events ---

    def on_leadership_gained(self) -> None:
        """Become LEADER. The next periodic tick runs the export."""
        if self._state is not OrchestratorState.LEADER:
            logger.info("Leadership gained; exports run on the next tick")
        self._state = OrchestratorState.LEADER
        self._leader = None

    def on_leadership_lost(self, new_leader: str | None = None) -> None:
        """Become FOLLOWER. An export in flight is allowed to finish."""
        if self._state is OrchestratorState.LEADER:
            if self.in_flight:
                logger.warning("Leadership lost while an export is in flight; letting it finish")
            else:
                logger.info("Leadership lost (new leader: %s)", new_leader or "unknown")
        self._state = OrchestratorState.FOLLOWER
        self._leader = new_leader

    # --- Triggers ---

    async def on_timer_tick(self) -> Invocation | None:
        """Run a scheduled export if leader and idle. Never raises ExportError."""
        if self._stopping:
            return None

        if self._state is not OrchestratorState.LEADER:
            self.counters["ticks_skipped_follower"] += 1
            logger.debug("Export tick skipped, not leader")
            return None

        if not self._token.try_acquire():
            self.counters["ticks_skipped_busy"] += 1
            logger.warning("Export tick skipped, export already in flight")
            return None

        try:
            return await self._invoke(Trigger.TIMER)
        finally:
            self._token.release()

    async def on_demand_invoke(self) -> ExportOutput:
        """Run an export now, regardless of leadership.

        Raises Busy if an export is in flight, or the export's own error.
        """
        if self._stopping:
            raise TransportFailure("export service is shutting down")

        if not self._token.try_acquire():
            self.counters["on_demand_busy"] += 1
            logger.warning("On-demand export rejected, export already in flight")
            raise Busy()

        try:
            invocation = await self._invoke(Trigger.ON_DEMAND)
        finally:
            self._token.release()

        if invocation.error is not None:
            raise invocation.error
        return invocation.output

    # --- Execution ---

    async def _invoke(self, trigger: Trigger) -> Invocation:
        """Export then sweep. Caller holds the token."""
        invocation = Invocation(trigger=trigger, started_at=datetime.now(UTC))
        self._current = invocation
        self.counters[f"{trigger.value}_started"] += 1
        logger.info("make export request (trigger=%s)", trigger.value)

        try:
            try:
                invocation.output = await self._call_export()
            except ExportError as e:
                invocation.error = e
            except Exception as e:
                logger.exception("Unexpected error during export")
                invocation.error = ExportError(f"unexpected error during export: {e}")

            if self.sweeper is not None and (invocation.error is None or self.cleanup_on_failure):
                await self._sweep(invocation)
        finally:
            invocation.finished_at = datetime.now(UTC)
            self._current = None
            self.history.append(invocation)
            self._record(invocation)

        return invocation

    async def _call_export(self) -> ExportOutput:
        task = asyncio.ensure_future(self.invoker.export())
        self._inflight = task
        try:
            return await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            # Inner call cancelled by shutdown() while the caller itself is still live
            if self._stopping and task.cancelled() and (current is None or current.cancelling() == 0):
                raise TransportFailure("export cancelled: service shutting down") from None
            raise
        finally:
            self._inflight = None

    async def _sweep(self, invocation: Invocation) -> None:
        try:
            result = await self.sweeper.asweep()
        except CleanupFailure as e:
            logger.error("Temporary dir cleanup failed: %s", e)
            invocation.cleanup_error = e
            invocation.removed = [str(path) for path in e.removed]
            self.counters["cleanup_failed"] += 1
            return
        invocation.removed = [str(path) for path in result.removed]
        if result.removed:
            logger.info("Removed %d temporary export dir(s)", len(result.removed))

    def _record(self, invocation: Invocation) -> None:
        trigger = invocation.trigger.value
        if invocation.succeeded:
            self.counters[f"{trigger}_succeeded"] += 1
            logger.info(
                "Export succeeded (trigger=%s, %d file(s), %sms): exported files: %s",
                trigger,
                len(invocation.files),
                invocation.duration_ms,
                invocation.files,
            )
        else:
            self.counters[f"{trigger}_failed"] += 1
            logger.error(
                "Export failed (trigger=%s, %sms): %s",
                trigger,
                invocation.duration_ms,
                invocation.error or "cancelled",
            )

    async def shutdown(self) -> None:
        """Stop accepting work and cancel the export in flight."""
        self._stopping = True
        task = self._inflight
        if task is None or task.done():
            return
        logger.warning("Cancelling in-flight export")
        task.cancel()
        await asyncio.wait({task}, timeout=SHUTDOWN_GRACE_SECONDS)

    # --- Introspection ---

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "leader": self._leader,
            "in_flight": self.in_flight,
            "current": self._current.to_dict() if self._current else None,
            "last_invocation": self.history[-1].to_dict() if self.history else None,
            "counters": dict(self.counters),
        }
