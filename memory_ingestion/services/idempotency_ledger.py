"""Durable record of which source items already produced a memory effect."""

import sqlite3
from datetime import datetime, timedelta
from typing import Callable, Optional

from ..core.config import Settings, get_settings
from ..core.logging import get_logger
from ..core.storage import Database, from_db_time, to_db_time, utc_now
from ..models.ledger import IdempotencyRecord, RecordStatus, Reservation
from ..models.source import SourceKind

logger = get_logger(__name__)


class IdempotencyLedger:
    """Atomic check-and-reserve over ``idempotency_records``.

    A reservation starts *pending* with a short expiry and is sealed as
    *committed* once the memory store acknowledged the write. Pending rows
    that outlive ``reservation_ttl_seconds`` belonged to a crashed attempt
    and are reclaimable.
    """

    def __init__(
        self,
        db: Database,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock

    @property
    def retention(self) -> timedelta:
        return timedelta(days=self.settings.idempotency_retention_days)

    @property
    def reservation_ttl(self) -> timedelta:
        return timedelta(seconds=self.settings.reservation_ttl_seconds)

    async def check_and_reserve(self, source_kind: SourceKind, source_id: str) -> Reservation:
        """Reserve (kind, source_id) for one write; ``duplicate`` if already live."""
        kind = SourceKind(source_kind).value
        now = self.clock()

        def _reserve(conn: sqlite3.Connection) -> tuple:
            conn.execute("BEGIN IMMEDIATE")
            stale = conn.execute(
                "SELECT status, first_seen_at FROM idempotency_records "
                "WHERE source_kind = ? AND source_id = ? AND expires_at <= ?",
                (kind, source_id, to_db_time(now)),
            ).fetchone()
            if stale is not None:
                conn.execute(
                    "DELETE FROM idempotency_records WHERE source_kind = ? AND source_id = ?",
                    (kind, source_id),
                )
            cursor = conn.execute(
                "INSERT OR IGNORE INTO idempotency_records "
                "(source_kind, source_id, status, first_seen_at, expires_at) VALUES (?, ?, ?, ?, ?)",
                (
                    kind,
                    source_id,
                    RecordStatus.PENDING.value,
                    to_db_time(now),
                    to_db_time(now + self.reservation_ttl),
                ),
            )
            return cursor.rowcount == 1, stale

        inserted, stale = await self.db.run(_reserve)

        if stale is not None and stale["status"] == RecordStatus.PENDING.value:
            logger.warning(
                "Reclaimed stale pending reservation; earlier attempt may have written",
                source_kind=kind,
                source_id=source_id,
                first_seen_at=stale["first_seen_at"],
            )

        if inserted:
            return Reservation.FRESH

        logger.info("Duplicate source item", source_kind=kind, source_id=source_id)
        return Reservation.DUPLICATE

    async def commit(self, source_kind: SourceKind, source_id: str) -> None:
        """Seal a reservation for the full retention window."""
        kind = SourceKind(source_kind).value
        now = self.clock()

        def _commit(conn: sqlite3.Connection) -> None:
            conn.execute(
                "UPDATE idempotency_records SET status = ?, expires_at = ? "
                "WHERE source_kind = ? AND source_id = ?",
                (RecordStatus.COMMITTED.value, to_db_time(now + self.retention), kind, source_id),
            )

        await self.db.run(_commit)

    async def release(self, source_kind: SourceKind, source_id: str) -> None:
        """Drop a pending reservation after a failed write."""
        kind = SourceKind(source_kind).value

        def _release(conn: sqlite3.Connection) -> None:
            conn.execute(
                "DELETE FROM idempotency_records "
                "WHERE source_kind = ? AND source_id = ? AND status = ?",
                (kind, source_id, RecordStatus.PENDING.value),
            )

        await self.db.run(_release)

    async def get(self, source_kind: SourceKind, source_id: str) -> Optional[IdempotencyRecord]:
        kind = SourceKind(source_kind).value

        def _get(conn: sqlite3.Connection):
            return conn.execute(
                "SELECT * FROM idempotency_records WHERE source_kind = ? AND source_id = ?",
                (kind, source_id),
            ).fetchone()

        row = await self.db.run(_get)
        if row is None:
            return None
        return IdempotencyRecord(
            source_kind=row["source_kind"],
            source_id=row["source_id"],
            status=row["status"],
            first_seen_at=from_db_time(row["first_seen_at"]),
            expires_at=from_db_time(row["expires_at"]),
        )

    async def is_recorded(self, source_kind: SourceKind, source_id: str) -> bool:
        """True when a live record (pending or committed) exists. Read-only."""
        record = await self.get(source_kind, source_id)
        return record is not None and record.is_live(self.clock())

    async def purge_expired(self) -> int:
        """Delete expired records and return how many were removed."""
        now = to_db_time(self.clock())

        def _purge(conn: sqlite3.Connection) -> int:
            return conn.execute(
                "DELETE FROM idempotency_records WHERE expires_at <= ?", (now,)
            ).rowcount

        removed = await self.db.run(_purge)
        logger.info("Purged expired idempotency records", removed=removed)
        return removed

    async def count(self) -> int:
        def _count(conn: sqlite3.Connection) -> int:
            return conn.execute("SELECT COUNT(*) FROM idempotency_records").fetchone()[0]

        return await self.db.run(_count)
