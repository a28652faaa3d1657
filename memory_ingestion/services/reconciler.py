"""Delta sync reconciler: the safety net for missed or dropped webhooks."""

import asyncio
import sqlite3
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from ..core.config import Settings, get_settings
from ..core.errors import CursorInvalidatedError, TransientSourceError
from ..core.logging import get_logger
from ..core.registry import SourceRegistry
from ..core.storage import Database, from_db_time, to_db_time, utc_now
from ..fetchers.base_fetcher import BaseFetcher
from ..models.cursor import DeltaCursor, ReconcileResult, ReconcileStatus
from ..models.job import IngestionJob, JobOrigin
from ..models.source import SourceConfig, SourceKind, source_key
from .idempotency_ledger import IdempotencyLedger
from .job_queue import JobQueue

logger = get_logger(__name__)


def _cursor_from_row(row: sqlite3.Row) -> DeltaCursor:
    return DeltaCursor(
        source_kind=row["source_kind"],
        tenant_id=row["tenant_id"],
        cursor=row["cursor"],
        last_advanced_at=from_db_time(row["last_advanced_at"]),
        last_run_at=from_db_time(row["last_run_at"]),
        backfilled_at=from_db_time(row["backfilled_at"]),
    )


class DeltaCursorStore:
    """Persisted cursors plus the run lease that keeps runs from overlapping."""

    def __init__(self, db: Database, clock: Callable[[], datetime] = utc_now):
        self.db = db
        self.clock = clock

    async def get(self, source_kind: SourceKind, tenant_id: str) -> Optional[DeltaCursor]:
        kind = SourceKind(source_kind).value

        def _get(conn: sqlite3.Connection):
            return conn.execute(
                "SELECT * FROM delta_cursors WHERE source_kind = ? AND tenant_id = ?",
                (kind, tenant_id),
            ).fetchone()

        row = await self.db.run(_get)
        return _cursor_from_row(row) if row is not None else None

    async def list_all(self) -> List[DeltaCursor]:
        rows = await self.db.run(
            lambda conn: conn.execute("SELECT * FROM delta_cursors ORDER BY source_kind, tenant_id").fetchall()
        )
        return [_cursor_from_row(row) for row in rows]

    async def acquire_run(self, source_kind: SourceKind, tenant_id: str, owner: str, lease_seconds: int) -> bool:
        """Take the run lease for (kind, tenant); False if another run holds it."""
        kind = SourceKind(source_kind).value
        now = self.clock()

        def _acquire(conn: sqlite3.Connection) -> bool:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(
                "INSERT OR IGNORE INTO delta_cursors (source_kind, tenant_id) VALUES (?, ?)",
                (kind, tenant_id),
            )
            row = conn.execute(
                "SELECT run_owner, run_lease_expires_at FROM delta_cursors WHERE source_kind = ? AND tenant_id = ?",
                (kind, tenant_id),
            ).fetchone()
            held = (
                row["run_owner"] is not None
                and row["run_owner"] != owner
                and row["run_lease_expires_at"] is not None
                and row["run_lease_expires_at"] > to_db_time(now)
            )
            if held:
                return False

            conn.execute(
                "UPDATE delta_cursors SET run_owner = ?, run_lease_expires_at = ?, last_run_at = ? "
                "WHERE source_kind = ? AND tenant_id = ?",
                (owner, to_db_time(now + timedelta(seconds=lease_seconds)), to_db_time(now), kind, tenant_id),
            )
            return True

        return await self.db.run(_acquire)

    async def release_run(self, source_kind: SourceKind, tenant_id: str, owner: str) -> None:
        kind = SourceKind(source_kind).value

        def _release(conn: sqlite3.Connection) -> None:
            conn.execute(
                "UPDATE delta_cursors SET run_owner = NULL, run_lease_expires_at = NULL "
                "WHERE source_kind = ? AND tenant_id = ? AND run_owner = ?",
                (kind, tenant_id, owner),
            )

        await self.db.run(_release)

    async def save(self, source_kind: SourceKind, tenant_id: str, cursor: str, backfilled: bool = False) -> None:
        """Advance the cursor. Call only once the page it follows is fully enqueued."""
        kind = SourceKind(source_kind).value
        now = to_db_time(self.clock())

        def _save(conn: sqlite3.Connection) -> None:
            conn.execute(
                "INSERT OR IGNORE INTO delta_cursors (source_kind, tenant_id) VALUES (?, ?)",
                (kind, tenant_id),
            )
            conn.execute(
                "UPDATE delta_cursors SET cursor = ?, last_advanced_at = ?, "
                "backfilled_at = CASE WHEN ? THEN ? ELSE backfilled_at END "
                "WHERE source_kind = ? AND tenant_id = ?",
                (cursor, now, 1 if backfilled else 0, now, kind, tenant_id),
            )

        await self.db.run(_save)


class Reconciler:
    """Pages through each source's changes and enqueues what the ledger has not seen.

    Runs for one key never overlap: an in-process lock covers concurrent
    callers here and the cursor row's run lease covers other processes.
    """

    def __init__(
        self,
        queue: JobQueue,
        ledger: IdempotencyLedger,
        registry: SourceRegistry,
        fetchers: Dict[SourceKind, BaseFetcher],
        cursors: DeltaCursorStore,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.queue = queue
        self.ledger = ledger
        self.registry = registry
        self.fetchers = fetchers
        self.cursors = cursors
        self.settings = settings or get_settings()
        self.clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}

    async def run(self, source_kind: SourceKind, tenant_id: str) -> ReconcileResult:
        """Reconcile one (kind, tenant). Failures are reported, never raised."""
        kind = SourceKind(source_kind)
        key = source_key(kind, tenant_id)
        result = ReconcileResult(source_kind=kind, tenant_id=tenant_id, status=ReconcileStatus.SKIPPED)

        config = self.registry.get(kind, tenant_id)
        if config is None or not config.enabled:
            result.reason = "source disabled"
            return result

        lock = self._locks.setdefault(key, asyncio.Lock())
        if lock.locked():
            result.reason = "run already in progress"
            logger.info("Reconcile skipped, run in progress", source=key)
            return result

        async with lock:
            owner = uuid4().hex
            try:
                acquired = await self.cursors.acquire_run(
                    kind, tenant_id, owner, self.settings.reconcile_lock_seconds
                )
            except Exception as e:
                logger.error("Could not take reconcile lease", source=key, error=str(e))
                result.status = ReconcileStatus.FAILED
                result.error = str(e)
                return result

            if not acquired:
                result.reason = "run lease held elsewhere"
                logger.info("Reconcile skipped, lease held", source=key)
                return result

            try:
                await self._sync(config, result)
                if result.reason is None:
                    result.status = ReconcileStatus.COMPLETED
            except Exception as e:
                result.status = ReconcileStatus.FAILED
                result.error = f"{type(e).__name__}: {e}"
                logger.error("Reconcile failed", source=key, error=result.error, pages=result.pages)
            finally:
                try:
                    await self.cursors.release_run(kind, tenant_id, owner)
                except Exception as e:
                    logger.warning("Could not release reconcile lease", source=key, error=str(e))

        logger.info(
            "Reconcile finished",
            source=key,
            status=result.status.value,
            pages=result.pages,
            enqueued=result.enqueued,
            already_ledgered=result.already_ledgered,
            removed=result.removed,
            backfill=result.backfill,
            rebackfilled=result.rebackfilled,
        )
        return result

    async def _sync(self, config: SourceConfig, result: ReconcileResult) -> None:
        stored = await self.cursors.get(config.source_kind, config.tenant_id)
        now = self.clock()

        if stored is None or stored.cursor is None:
            result.backfill = True
            since = now - timedelta(days=self.settings.initial_backfill_days)
            logger.info("Starting initial backfill", source=config.key, since=since.isoformat())
            await self._page_through(config, None, since, result)
            return

        try:
            await self._page_through(config, stored.cursor, None, result)
        except CursorInvalidatedError as e:
            since = now - timedelta(days=self.settings.rebackfill_days)
            logger.warning(
                "Delta cursor invalidated, re-backfilling",
                source=config.key,
                since=since.isoformat(),
                error=str(e),
            )
            result.rebackfilled = True
            # A second invalidation inside this run propagates and fails the run.
            await self._page_through(config, None, since, result)

    async def _page_through(
        self,
        config: SourceConfig,
        cursor: Optional[str],
        since: Optional[datetime],
        result: ReconcileResult,
    ) -> None:
        fetcher = self.fetchers[config.source_kind]
        tenant = config.tenant
        backfilling = cursor is None

        while True:
            try:
                page = await asyncio.wait_for(
                    fetcher.delta_query(tenant, cursor=cursor, since=since if cursor is None else None),
                    timeout=self.settings.fetch_timeout,
                )
            except asyncio.TimeoutError as e:
                raise TransientSourceError(f"Delta query for {config.key} timed out") from e
            result.pages += 1

            if not self.registry.is_enabled(config.source_kind, config.tenant_id):
                result.status = ReconcileStatus.SKIPPED
                result.reason = "source disabled during run"
                logger.info("Source disabled mid-run, stopping", source=config.key)
                return

            for item in page.items:
                if item.removed:
                    result.removed += 1
                    continue
                if await self.ledger.is_recorded(config.source_kind, item.resource_id):
                    result.already_ledgered += 1
                    continue
                await self.queue.enqueue(
                    IngestionJob(
                        source_kind=config.source_kind,
                        resource_id=item.resource_id,
                        tenant=tenant,
                        change_type=item.change_type,
                        origin=JobOrigin.RECONCILER,
                    )
                )
                result.enqueued += 1

            if page.next_cursor:
                await self.cursors.save(
                    config.source_kind, config.tenant_id, page.next_cursor, backfilled=backfilling
                )
                cursor = page.next_cursor
                result.cursor = cursor

            if not page.has_more or not page.next_cursor:
                return

    async def run_due(self, force: bool = False) -> List[ReconcileResult]:
        """Run every enabled source whose interval has elapsed, concurrently."""
        interval = timedelta(minutes=self.settings.reconcile_interval_minutes)
        now = self.clock()
        last_runs = {
            source_key(c.source_kind, c.tenant_id): c.last_run_at for c in await self.cursors.list_all()
        }

        due = [
            config
            for config in self.registry.list_sources(enabled_only=True)
            if force or last_runs.get(config.key) is None or now - last_runs[config.key] >= interval
        ]
        if not due:
            logger.info("No sources due for reconcile")
            return []

        return list(
            await asyncio.gather(*(self.run(config.source_kind, config.tenant_id) for config in due))
        )
