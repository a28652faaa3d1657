"""Ingestion workers: claim a job, fetch, normalize, dedupe, ingest."""

import asyncio
import os
import socket
from typing import Awaitable, Dict, List, Optional, TypeVar

from ..core.config import Settings, get_settings
from ..core.errors import (
    ItemGoneError,
    PermanentError,
    StoreUnavailableError,
    TransientError,
    TransientSourceError,
)
from ..core.logging import JobLogger, get_logger
from ..fetchers.base_fetcher import BaseFetcher
from ..models.job import IngestionJob, JobOutcome, JobResult
from ..models.ledger import Reservation
from ..models.source import SourceKind
from ..processors.envelope_normalizer import normalize
from .idempotency_ledger import IdempotencyLedger
from .job_queue import JobQueue, backoff_delay
from .memory_client import MemoryClient

logger = get_logger(__name__)

T = TypeVar("T")


def default_worker_id(index: int = 0) -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{index}"


class IngestionWorker:
    """Runs the per-job pipeline and classifies its failures.

    The worker does not consult source enablement: jobs already queued when
    a source is disabled are allowed to drain.
    """

    def __init__(
        self,
        queue: JobQueue,
        ledger: IdempotencyLedger,
        fetchers: Dict[SourceKind, BaseFetcher],
        memory: MemoryClient,
        settings: Optional[Settings] = None,
    ):
        self.queue = queue
        self.ledger = ledger
        self.fetchers = fetchers
        self.memory = memory
        self.settings = settings or get_settings()

    async def _bounded(self, call: Awaitable[T], timeout: float, error_cls: type, what: str) -> T:
        try:
            return await asyncio.wait_for(call, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise error_cls(f"{what} exceeded {timeout}s") from e

    async def process(self, job: IngestionJob) -> JobResult:
        """Process one claimed job to a terminal or rescheduled outcome."""
        jlog = JobLogger(job.job_id, job.source_kind.value, job.resource_id, attempt=job.attempts)

        try:
            return await self._ingest(job, jlog)
        except PermanentError as e:
            log = jlog.warning if isinstance(e, ItemGoneError) else jlog.error
            log("Permanent failure, dropping job", error=str(e), error_type=type(e).__name__)
            await self.queue.ack(job.job_id)
            return JobResult(job_id=job.job_id, outcome=JobOutcome.FAILED_PERMANENT, error=str(e))
        except TransientError as e:
            return await self._retry(job, jlog, e, e.retry_after)
        except Exception as e:
            jlog.error("Unexpected error processing job", error=str(e), exc_info=True)
            return await self._retry(job, jlog, e, None)

    async def _ingest(self, job: IngestionJob, jlog: JobLogger) -> JobResult:
        fetcher = self.fetchers[job.source_kind]

        raw = await self._bounded(
            fetcher.fetch_by_id(job.resource_id, job.tenant),
            self.settings.fetch_timeout,
            TransientSourceError,
            f"Fetching {job.resource_id}",
        )
        envelope = normalize(raw, job.source_kind)

        reservation = await self.ledger.check_and_reserve(envelope.source_kind, envelope.source_id)
        if reservation == Reservation.DUPLICATE:
            jlog.info("Already ingested, acknowledging as no-op", source_id=envelope.source_id)
            await self.queue.ack(job.job_id)
            return JobResult(job_id=job.job_id, outcome=JobOutcome.DUPLICATE)

        try:
            effect_id = await self._bounded(
                self.memory.ingest(envelope, job.tenant),
                self.settings.ingest_timeout,
                StoreUnavailableError,
                f"Ingesting {envelope.idempotency_key}",
            )
        except Exception:
            await self.ledger.release(envelope.source_kind, envelope.source_id)
            raise

        try:
            await self.ledger.commit(envelope.source_kind, envelope.source_id)
        except Exception as e:
            # The write happened; the pending reservation still guards the item until it expires.
            jlog.error("Failed to seal idempotency record", source_id=envelope.source_id, error=str(e))

        await self.queue.ack(job.job_id)
        jlog.info("Job ingested", source_id=envelope.source_id, effect_id=effect_id)
        return JobResult(job_id=job.job_id, outcome=JobOutcome.INGESTED, effect_id=effect_id)

    async def _retry(
        self,
        job: IngestionJob,
        jlog: JobLogger,
        error: Exception,
        retry_after: Optional[float],
    ) -> JobResult:
        attempts = job.attempts + 1
        message = f"{type(error).__name__}: {error}"

        if attempts > self.settings.max_job_attempts:
            await self.queue.dead_letter(job, message, attempts)
            return JobResult(job_id=job.job_id, outcome=JobOutcome.DEAD_LETTERED, error=message)

        delay = backoff_delay(
            job.attempts,
            base=self.settings.retry_base_delay,
            cap=self.settings.retry_max_delay,
            jitter=self.settings.retry_jitter,
            retry_after=retry_after,
        )
        await self.queue.nack(job.job_id, delay, message)
        jlog.warning("Transient failure, retry scheduled", error=message, retry_in=round(delay, 2))
        return JobResult(
            job_id=job.job_id,
            outcome=JobOutcome.RETRY_SCHEDULED,
            error=message,
            retry_delay=delay,
        )


class WorkerPool:
    """A fixed number of asyncio worker loops sharing one queue."""

    def __init__(self, worker: IngestionWorker, settings: Optional[Settings] = None):
        self.worker = worker
        self.queue = worker.queue
        self.settings = settings or worker.settings or get_settings()
        self.concurrency = self.settings.max_concurrent_jobs

    async def _claim(self, worker_id: str) -> Optional[IngestionJob]:
        try:
            return await self.queue.claim(worker_id)
        except Exception as e:
            logger.error("Failed to claim job", worker_id=worker_id, error=str(e))
            return None

    async def _loop(self, index: int, stop_event: asyncio.Event) -> None:
        worker_id = default_worker_id(index)
        logger.info("Worker started", worker_id=worker_id)

        while not stop_event.is_set():
            job = await self._claim(worker_id)
            if job is None:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.settings.worker_poll_interval)
                except asyncio.TimeoutError:
                    pass
                continue

            try:
                await self.worker.process(job)
            except Exception as e:
                logger.error("Worker failed to settle job", worker_id=worker_id, job_id=job.job_id, error=str(e))

        logger.info("Worker stopped", worker_id=worker_id)

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Run worker loops until ``stop_event`` is set."""
        stop_event = stop_event or asyncio.Event()
        await asyncio.gather(*(self._loop(i, stop_event) for i in range(self.concurrency)))

    async def drain(self, max_jobs: Optional[int] = None) -> List[JobResult]:
        """Process every currently eligible job, then return the results."""
        results: List[JobResult] = []

        async def _drain_loop(index: int) -> None:
            worker_id = default_worker_id(index)
            while max_jobs is None or len(results) < max_jobs:
                job = await self._claim(worker_id)
                if job is None:
                    return
                try:
                    results.append(await self.worker.process(job))
                except Exception as e:
                    logger.error("Worker failed to settle job", worker_id=worker_id, job_id=job.job_id, error=str(e))

        await asyncio.gather(*(_drain_loop(i) for i in range(self.concurrency)))

        logger.info(
            "Queue drained",
            processed=len(results),
            ingested=sum(1 for r in results if r.outcome == JobOutcome.INGESTED),
            retried=sum(1 for r in results if r.outcome == JobOutcome.RETRY_SCHEDULED),
            dead_lettered=sum(1 for r in results if r.outcome == JobOutcome.DEAD_LETTERED),
        )
        return results
