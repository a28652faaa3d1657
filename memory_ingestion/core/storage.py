"""SQLite storage shared by the queue, ledger, cursors and subscriptions."""

import asyncio
import contextlib
import sqlite3
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, TypeVar

from .logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

_DB_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS ingestion_jobs (
        job_id TEXT PRIMARY KEY,
        source_kind TEXT NOT NULL,
        resource_id TEXT NOT NULL,
        tenant_id TEXT NOT NULL,
        payload TEXT NOT NULL,
        status TEXT NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        enqueued_at TEXT NOT NULL,
        next_eligible_at TEXT NOT NULL,
        lease_expires_at TEXT,
        claimed_by TEXT,
        last_error TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_jobs_status_due ON ingestion_jobs(status, next_eligible_at)",
    "CREATE INDEX IF NOT EXISTS idx_jobs_lease ON ingestion_jobs(status, lease_expires_at)",
    """
    CREATE TABLE IF NOT EXISTS dead_letters (
        job_id TEXT PRIMARY KEY,
        source_kind TEXT NOT NULL,
        resource_id TEXT NOT NULL,
        tenant_id TEXT NOT NULL,
        payload TEXT NOT NULL,
        attempts INTEGER NOT NULL,
        last_error TEXT,
        dead_lettered_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS idempotency_records (
        source_kind TEXT NOT NULL,
        source_id TEXT NOT NULL,
        status TEXT NOT NULL,
        first_seen_at TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        PRIMARY KEY (source_kind, source_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_ledger_expiry ON idempotency_records(expires_at)",
    """
    CREATE TABLE IF NOT EXISTS delta_cursors (
        source_kind TEXT NOT NULL,
        tenant_id TEXT NOT NULL,
        cursor TEXT,
        last_advanced_at TEXT,
        last_run_at TEXT,
        backfilled_at TEXT,
        run_owner TEXT,
        run_lease_expires_at TEXT,
        PRIMARY KEY (source_kind, tenant_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS subscriptions (
        source_kind TEXT NOT NULL,
        tenant_id TEXT NOT NULL,
        state TEXT NOT NULL,
        external_subscription_id TEXT,
        expires_at TEXT,
        renewal_attempts INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (source_kind, tenant_id)
    )
    """,
)


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    """Render a datetime in the fixed-width form stored in the database.

    A fixed width keeps lexical ordering in SQL identical to time ordering.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_DB_TIME_FORMAT)


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp back into an aware UTC datetime."""
    if value is None:
        return None
    return datetime.strptime(value, _DB_TIME_FORMAT).replace(tzinfo=timezone.utc)


class Database:
    """Thin wrapper over a SQLite file with thread-offloaded transactions."""

    def __init__(
        self,
        path: Path,
        busy_timeout_ms: int = 5000,
        lock_retries: int = 5,
        lock_backoff: float = 0.05,
    ):
        self.path = Path(path)
        self.busy_timeout_ms = busy_timeout_ms
        self.lock_retries = lock_retries
        self.lock_backoff = lock_backoff
        self._initialized = False

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=self.busy_timeout_ms / 1000)
        conn.row_factory = sqlite3.Row
        conn.execute(f"PRAGMA busy_timeout={self.busy_timeout_ms}")
        return conn

    @contextlib.contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection; commit on success, roll back on error, always close."""
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug("Transaction failed, rolling back", error=str(e))
            conn.rollback()
            raise
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create tables and switch the file to WAL mode."""
        if self._initialized:
            return

        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.connect() as conn:
            try:
                conn.execute("PRAGMA journal_mode=WAL")
            except sqlite3.OperationalError as e:
                logger.warning("WAL mode unavailable; continuing without it", error=str(e))
            for statement in SCHEMA:
                conn.execute(statement)

        self._initialized = True
        logger.info("Database initialized", path=str(self.path))

    def run_sync(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        """Run ``fn`` inside one transaction, retrying on lock contention."""
        self.initialize()

        for attempt in range(1, self.lock_retries + 1):
            try:
                with self.connect() as conn:
                    return fn(conn)
            except sqlite3.OperationalError as e:
                message = str(e).lower()
                if "locked" not in message or attempt >= self.lock_retries:
                    raise
                time.sleep(self.lock_backoff * attempt)

        raise RuntimeError("unreachable")

    async def run(self, fn: Callable[[sqlite3.Connection], Any]) -> Any:
        """Run ``fn`` in a worker thread so the event loop never blocks on disk."""
        return await asyncio.to_thread(self.run_sync, fn)
