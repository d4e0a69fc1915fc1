"""SQLite-backed lease store for leader election.

A lease is one row per name recording the holder identity and a validity
deadline. Acquire and renew are the same atomic upsert
(INSERT ... ON CONFLICT DO UPDATE ... WHERE ... RETURNING, SQLite 3.35+):
it succeeds only when the row is missing, already held by the caller,
released, or expired. At most one identity holds a valid lease per name.

Blocking sqlite3 calls run in worker threads via asyncio.to_thread.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from typing import Protocol

from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import ArgumentError

from dgraph_export.errors import LeaseStoreError

logger = logging.getLogger(__name__)

_SCHEMA_READY: set[str] = set()
_SCHEMA_LOCK = threading.Lock()


@dataclass(frozen=True)
class LeaseRecord:
    """Current state of a named lease."""

    name: str
    holder: str | None
    acquired_at: datetime | None
    renewed_at: datetime | None
    expires_at: datetime | None
    transitions: int

    def is_valid(self, now: datetime | None = None) -> bool:
        if not self.holder or self.expires_at is None:
            return False
        return self.expires_at > (now or datetime.now(timezone.utc))


class LeaseStore(Protocol):
    """Compare-and-swap store for named leases."""

    async def initialize(self) -> None: ...

    async def try_acquire_or_renew(
        self, name: str, identity: str, ttl: float, now: datetime | None = None
    ) -> bool: ...

    async def release(self, name: str, identity: str) -> bool: ...

    async def get(self, name: str) -> LeaseRecord | None: ...


def _strip_quotes(value: str) -> str:
    value = (value or "").strip()
    if (value.startswith('"') and value.endswith('"')) or (value.startswith("'") and value.endswith("'")):
        value = value[1:-1].strip()
    return value


def lease_db_path(db_url: str) -> str:
    """Resolve a sqlite URL (or bare path) to an absolute database path."""
    url = _strip_quotes(db_url)
    if not url:
        raise LeaseStoreError("LEASE_DB_URL is not set")

    if "://" not in url:
        return os.path.abspath(os.path.expanduser(url))

    try:
        parsed = make_url(url)
    except ArgumentError as e:
        raise LeaseStoreError(f"invalid LEASE_DB_URL {url!r}: {e}") from e

    if not parsed.drivername.startswith("sqlite"):
        raise LeaseStoreError("LEASE_DB_URL must be a sqlite URL (e.g. sqlite:////data/lease.db)")

    path = parsed.database or ""
    if not path or path == ":memory:":
        raise LeaseStoreError("LEASE_DB_URL must point at a database file shared by all replicas")

    path = os.path.expanduser(path)
    if not os.path.isabs(path):
        path = os.path.abspath(path)
    return path


def _apply_pragmas(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.execute("PRAGMA busy_timeout=5000")


def _ensure_schema(conn: sqlite3.Connection, db_path: str, force: bool = False) -> None:
    if db_path in _SCHEMA_READY and not force:
        return

    with _SCHEMA_LOCK:
        if db_path in _SCHEMA_READY and not force:
            return

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS leases (
                name TEXT PRIMARY KEY,
                holder TEXT,
                acquired_at TEXT,
                renewed_at TEXT,
                expires_at TEXT,
                transitions INTEGER NOT NULL DEFAULT 0
            )
            """
        )

        _SCHEMA_READY.add(db_path)


def _dt_to_str(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.isoformat(timespec="milliseconds")


def _str_to_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _row_to_record(row: sqlite3.Row | None) -> LeaseRecord | None:
    if not row:
        return None
    return LeaseRecord(
        name=row["name"],
        holder=row["holder"],
        acquired_at=_str_to_dt(row["acquired_at"]),
        renewed_at=_str_to_dt(row["renewed_at"]),
        expires_at=_str_to_dt(row["expires_at"]),
        transitions=int(row["transitions"]),
    )


class SQLiteLeaseStore:
    """Lease store in a SQLite database file shared by all replicas."""

    def __init__(self, db_url: str):
        self.db_url = db_url
        self.db_path = lease_db_path(db_url)

    def _connect(self, force_schema: bool = False) -> sqlite3.Connection:
        dir_path = os.path.dirname(self.db_path)
        if dir_path:
            os.makedirs(dir_path, exist_ok=True)

        conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        _apply_pragmas(conn)
        _ensure_schema(conn, self.db_path, force=force_schema)
        return conn

    def _run_with_conn(self, func, *args, **kwargs):
        conn = self._connect()
        try:
            return func(conn, *args, **kwargs)
        except sqlite3.OperationalError as e:
            # Database file was replaced underneath us; recreate on next connect
            if "no such table" in str(e):
                _SCHEMA_READY.discard(self.db_path)
            raise
        finally:
            conn.close()

    def _initialize_sync(self) -> None:
        self._connect(force_schema=True).close()

    async def initialize(self) -> None:
        """Create the lease table. Raises LeaseStoreError."""
        try:
            await asyncio.to_thread(self._initialize_sync)
        except (OSError, sqlite3.Error) as e:
            raise LeaseStoreError(f"cannot initialize lease store at {self.db_path}: {e}") from e
        logger.info("Lease store ready at %s", self.db_path)

    async def try_acquire_or_renew(
        self, name: str, identity: str, ttl: float, now: datetime | None = None
    ) -> bool:
        """Acquire or renew `name` for `identity` for `ttl` seconds."""
        return await asyncio.to_thread(self._try_acquire_or_renew_sync, name, identity, ttl, now)

    def _try_acquire_or_renew_sync(self, name: str, identity: str, ttl: float, now: datetime | None) -> bool:
        now = now or datetime.now(timezone.utc)
        now_str = _dt_to_str(now)
        expires_str = _dt_to_str(now + timedelta(seconds=ttl))

        def _upsert(conn: sqlite3.Connection) -> bool:
            row = conn.execute(
                """
                INSERT INTO leases (name, holder, acquired_at, renewed_at, expires_at, transitions)
                VALUES (:name, :holder, :now, :now, :expires_at, 0)
                ON CONFLICT(name) DO UPDATE SET
                    holder = excluded.holder,
                    acquired_at = CASE
                        WHEN leases.holder = excluded.holder THEN leases.acquired_at
                        ELSE excluded.acquired_at
                    END,
                    renewed_at = excluded.renewed_at,
                    expires_at = excluded.expires_at,
                    transitions = CASE
                        WHEN leases.holder = excluded.holder THEN leases.transitions
                        ELSE leases.transitions + 1
                    END
                WHERE leases.holder = excluded.holder
                   OR leases.holder IS NULL
                   OR leases.expires_at IS NULL
                   OR leases.expires_at <= :now
                RETURNING holder
                """,
                {
                    "name": name,
                    "holder": identity,
                    "now": now_str,
                    "expires_at": expires_str,
                },
            ).fetchone()
            return row is not None

        return self._run_with_conn(_upsert)

    async def release(self, name: str, identity: str) -> bool:
        """Release `name` if held by `identity`."""
        return await asyncio.to_thread(self._release_sync, name, identity)

    def _release_sync(self, name: str, identity: str) -> bool:
        now_str = _dt_to_str(datetime.now(timezone.utc))

        def _release(conn: sqlite3.Connection) -> bool:
            cur = conn.execute(
                """
                UPDATE leases
                SET holder = NULL,
                    renewed_at = :now,
                    expires_at = :now
                WHERE name = :name AND holder = :holder
                """,
                {"name": name, "holder": identity, "now": now_str},
            )
            return cur.rowcount > 0

        return self._run_with_conn(_release)

    async def get(self, name: str) -> LeaseRecord | None:
        return await asyncio.to_thread(self._get_sync, name)

    def _get_sync(self, name: str) -> LeaseRecord | None:
        def _get(conn: sqlite3.Connection) -> LeaseRecord | None:
            row = conn.execute(
                """
                SELECT name, holder, acquired_at, renewed_at, expires_at, transitions
                FROM leases
                WHERE name = :name
                """,
                {"name": name},
            ).fetchone()
            return _row_to_record(row)

        return self._run_with_conn(_get)
