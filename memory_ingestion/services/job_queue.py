"""Durable ingestion job queue with per-job leases, backed by SQLite."""

import random
import sqlite3
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

from ..core.config import Settings, get_settings
from ..core.logging import get_logger
from ..core.storage import Database, from_db_time, to_db_time, utc_now
from ..models.job import DeadLetter, IngestionJob, JobOrigin

logger = get_logger(__name__)

STATUS_QUEUED = "queued"
STATUS_CLAIMED = "claimed"


def backoff_delay(
    attempt: int,
    base: float,
    cap: float,
    jitter: float = 0.0,
    retry_after: Optional[float] = None,
) -> float:
    """Seconds to wait before the next attempt.

    ``min(base * 2**attempt, cap)`` plus up to ``jitter`` seconds of noise. A
    platform-supplied ``retry_after`` is a floor.
    """
    bounded = min(base * (2 ** max(0, attempt)), cap)
    delay = bounded + (random.uniform(0, jitter) if jitter > 0 else 0.0)
    if retry_after is not None:
        delay = max(delay, retry_after)
    return delay


def _job_from_row(row: sqlite3.Row) -> IngestionJob:
    job = IngestionJob.model_validate_json(row["payload"])
    return job.model_copy(
        update={
            "attempts": row["attempts"],
            "next_eligible_at": from_db_time(row["next_eligible_at"]),
            "claimed_by": row["claimed_by"],
            "lease_expires_at": from_db_time(row["lease_expires_at"]),
            "last_error": row["last_error"],
        }
    )


class JobQueue:
    """At-least-once work queue.

    A claimed job is leased to one worker until ``job_lease_seconds`` pass;
    an expired lease makes the job claimable again, which covers workers
    that died mid-job.
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

    @staticmethod
    def _insert(conn: sqlite3.Connection, job: IngestionJob) -> None:
        conn.execute(
            "INSERT INTO ingestion_jobs (job_id, source_kind, resource_id, tenant_id, payload, status, "
            "attempts, enqueued_at, next_eligible_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                job.job_id,
                job.source_kind.value,
                job.resource_id,
                job.tenant.tenant_id,
                job.payload_json(),
                STATUS_QUEUED,
                job.attempts,
                to_db_time(job.enqueued_at),
                to_db_time(job.next_eligible_at),
            ),
        )

    async def enqueue(self, job: IngestionJob) -> str:
        """Durably add one job; returns its id."""
        await self.db.run(lambda conn: self._insert(conn, job))
        logger.debug(
            "Enqueued job",
            job_id=job.job_id,
            source_kind=job.source_kind.value,
            resource_id=job.resource_id,
            origin=job.origin.value,
        )
        return job.job_id

    async def enqueue_many(self, jobs: Sequence[IngestionJob]) -> List[str]:
        """Add several jobs in one transaction; all or none become visible."""
        if not jobs:
            return []

        def _insert_all(conn: sqlite3.Connection) -> None:
            conn.execute("BEGIN IMMEDIATE")
            for job in jobs:
                self._insert(conn, job)

        await self.db.run(_insert_all)
        logger.debug("Enqueued jobs", count=len(jobs))
        return [job.job_id for job in jobs]

    async def claim(self, worker_id: str) -> Optional[IngestionJob]:
        """Lease the oldest eligible job to ``worker_id``, or return None."""
        now = self.clock()
        lease_expires_at = now + timedelta(seconds=self.settings.job_lease_seconds)

        def _claim(conn: sqlite3.Connection) -> Optional[sqlite3.Row]:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT * FROM ingestion_jobs "
                "WHERE (status = ? AND next_eligible_at <= ?) "
                "OR (status = ? AND lease_expires_at <= ?) "
                "ORDER BY next_eligible_at, enqueued_at LIMIT 1",
                (STATUS_QUEUED, to_db_time(now), STATUS_CLAIMED, to_db_time(now)),
            ).fetchone()
            if row is None:
                return None

            if row["status"] == STATUS_CLAIMED:
                logger.warning(
                    "Reclaiming job with expired lease",
                    job_id=row["job_id"],
                    previous_worker=row["claimed_by"],
                )

            conn.execute(
                "UPDATE ingestion_jobs SET status = ?, claimed_by = ?, lease_expires_at = ? WHERE job_id = ?",
                (STATUS_CLAIMED, worker_id, to_db_time(lease_expires_at), row["job_id"]),
            )
            return conn.execute(
                "SELECT * FROM ingestion_jobs WHERE job_id = ?", (row["job_id"],)
            ).fetchone()

        row = await self.db.run(_claim)
        return _job_from_row(row) if row is not None else None

    async def ack(self, job_id: str) -> None:
        """Remove a job that reached a terminal outcome."""
        await self.db.run(
            lambda conn: conn.execute("DELETE FROM ingestion_jobs WHERE job_id = ?", (job_id,))
        )

    async def nack(self, job_id: str, retry_after: float, error: Optional[str] = None) -> None:
        """Count a failed attempt and make the job eligible again after ``retry_after`` seconds."""
        next_eligible_at = self.clock() + timedelta(seconds=max(0.0, retry_after))

        def _nack(conn: sqlite3.Connection) -> None:
            conn.execute(
                "UPDATE ingestion_jobs SET status = ?, attempts = attempts + 1, next_eligible_at = ?, "
                "last_error = ?, claimed_by = NULL, lease_expires_at = NULL WHERE job_id = ?",
                (STATUS_QUEUED, to_db_time(next_eligible_at), error, job_id),
            )

        await self.db.run(_nack)

    async def release(self, job_id: str) -> None:
        """Give a claimed job back without counting an attempt (shutdown)."""

        def _release(conn: sqlite3.Connection) -> None:
            conn.execute(
                "UPDATE ingestion_jobs SET status = ?, claimed_by = NULL, lease_expires_at = NULL "
                "WHERE job_id = ? AND status = ?",
                (STATUS_QUEUED, job_id, STATUS_CLAIMED),
            )

        await self.db.run(_release)

    async def dead_letter(self, job: IngestionJob, error: Optional[str], attempts: int) -> DeadLetter:
        """Move a job out of the queue, keeping its original payload and last error."""
        now = self.clock()

        def _move(conn: sqlite3.Connection) -> None:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(
                "INSERT OR REPLACE INTO dead_letters (job_id, source_kind, resource_id, tenant_id, payload, "
                "attempts, last_error, dead_lettered_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    job.job_id,
                    job.source_kind.value,
                    job.resource_id,
                    job.tenant.tenant_id,
                    job.payload_json(),
                    attempts,
                    error,
                    to_db_time(now),
                ),
            )
            conn.execute("DELETE FROM ingestion_jobs WHERE job_id = ?", (job.job_id,))

        await self.db.run(_move)

        logger.error(
            "Job dead-lettered",
            job_id=job.job_id,
            source_kind=job.source_kind.value,
            resource_id=job.resource_id,
            attempts=attempts,
            error=error,
        )
        return DeadLetter(job=job, attempts=attempts, last_error=error, dead_lettered_at=now)

    async def list_dead_letters(self, limit: int = 100) -> List[DeadLetter]:
        def _list(conn: sqlite3.Connection) -> List[sqlite3.Row]:
            return conn.execute(
                "SELECT * FROM dead_letters ORDER BY dead_lettered_at DESC LIMIT ?", (limit,)
            ).fetchall()

        rows = await self.db.run(_list)
        return [
            DeadLetter(
                job=IngestionJob.model_validate_json(row["payload"]),
                attempts=row["attempts"],
                last_error=row["last_error"],
                dead_lettered_at=from_db_time(row["dead_lettered_at"]),
            )
            for row in rows
        ]

    async def replay_dead_letter(self, job_id: str) -> Optional[IngestionJob]:
        """Re-enqueue a dead-lettered job with a fresh attempt count.

        Returns the queued job, or None if no dead letter has that id.
        """
        now = self.clock()

        def _replay(conn: sqlite3.Connection) -> Optional[IngestionJob]:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("SELECT payload FROM dead_letters WHERE job_id = ?", (job_id,)).fetchone()
            if row is None:
                return None

            original = IngestionJob.model_validate_json(row["payload"])
            job = original.model_copy(
                update={
                    "attempts": 0,
                    "origin": JobOrigin.REPLAY,
                    "enqueued_at": now,
                    "next_eligible_at": now,
                    "last_error": None,
                }
            )
            conn.execute("DELETE FROM dead_letters WHERE job_id = ?", (job_id,))
            self._insert(conn, job)
            return job

        job = await self.db.run(_replay)
        if job is not None:
            logger.info(
                "Replayed dead letter",
                job_id=job.job_id,
                source_kind=job.source_kind.value,
                resource_id=job.resource_id,
            )
        return job

    async def depth(self) -> int:
        """Jobs waiting or in flight."""
        return await self.db.run(
            lambda conn: conn.execute("SELECT COUNT(*) FROM ingestion_jobs").fetchone()[0]
        )

    async def dead_letter_count(self) -> int:
        return await self.db.run(
            lambda conn: conn.execute("SELECT COUNT(*) FROM dead_letters").fetchone()[0]
        )
