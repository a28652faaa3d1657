"""Tests for the durable job queue."""

import pytest

from memory_ingestion.models.job import JobOrigin
from memory_ingestion.services.job_queue import JobQueue, backoff_delay
from tests.factories import make_job


# =============================================================================
# Backoff
# =============================================================================


class TestBackoffDelay:
    def test_doubles_per_attempt(self):
        assert [backoff_delay(n, base=2.0, cap=100.0) for n in range(4)] == [2.0, 4.0, 8.0, 16.0]

    def test_capped(self):
        assert backoff_delay(20, base=2.0, cap=900.0) == 900.0

    def test_jitter_is_bounded(self):
        for _ in range(20):
            assert 4.0 <= backoff_delay(1, base=2.0, cap=100.0, jitter=1.0) <= 5.0

    def test_retry_after_is_a_floor(self):
        assert backoff_delay(0, base=2.0, cap=100.0, retry_after=30.0) == 30.0
        assert backoff_delay(5, base=2.0, cap=100.0, retry_after=1.0) == 64.0


# =============================================================================
# Queue operations
# =============================================================================


@pytest.mark.asyncio
async def test_enqueue_claim_ack(queue):
    job = make_job()
    await queue.enqueue(job)
    assert await queue.depth() == 1

    claimed = await queue.claim("w1")
    assert claimed.job_id == job.job_id
    assert claimed.claimed_by == "w1"
    assert claimed.lease_expires_at is not None
    assert claimed.tenant == job.tenant

    # Single claim per job while the lease holds.
    assert await queue.claim("w2") is None

    await queue.ack(job.job_id)
    assert await queue.depth() == 0


@pytest.mark.asyncio
async def test_enqueue_many_is_one_transaction(queue):
    ids = await queue.enqueue_many([make_job("a"), make_job("b"), make_job("c")])
    assert len(ids) == 3
    assert await queue.depth() == 3
    assert await queue.enqueue_many([]) == []


@pytest.mark.asyncio
async def test_nack_counts_attempt_and_delays(queue):
    job = make_job()
    await queue.enqueue(job)
    await queue.claim("w1")

    await queue.nack(job.job_id, retry_after=3600, error="boom")
    assert await queue.claim("w1") is None

    await queue.nack(job.job_id, retry_after=0, error="boom again")
    claimed = await queue.claim("w1")
    assert claimed.attempts == 2
    assert claimed.last_error == "boom again"


@pytest.mark.asyncio
async def test_expired_lease_is_reclaimable(db, settings):
    short = JobQueue(db, settings.model_copy(update={"job_lease_seconds": 0}))
    job = make_job()
    await short.enqueue(job)

    assert (await short.claim("w1")).job_id == job.job_id
    reclaimed = await short.claim("w2")
    assert reclaimed.job_id == job.job_id
    assert reclaimed.claimed_by == "w2"


@pytest.mark.asyncio
async def test_release_returns_job_without_counting_attempt(queue):
    job = make_job()
    await queue.enqueue(job)
    await queue.claim("w1")
    await queue.release(job.job_id)

    claimed = await queue.claim("w2")
    assert claimed.attempts == 0


@pytest.mark.asyncio
async def test_dead_letter_and_replay(queue):
    job = make_job("abc123")
    await queue.enqueue(job)
    await queue.claim("w1")

    await queue.dead_letter(job, "TransientSourceError: 503", attempts=6)
    assert await queue.depth() == 0
    assert await queue.dead_letter_count() == 1
    assert await queue.claim("w1") is None

    [letter] = await queue.list_dead_letters()
    assert letter.job.resource_id == "abc123"
    assert letter.job.tenant == job.tenant
    assert letter.attempts == 6
    assert letter.last_error == "TransientSourceError: 503"

    replayed = await queue.replay_dead_letter(job.job_id)
    assert replayed.origin == JobOrigin.REPLAY
    assert replayed.attempts == 0
    assert await queue.dead_letter_count() == 0

    claimed = await queue.claim("w1")
    assert claimed.job_id == job.job_id
    assert claimed.attempts == 0
    assert claimed.origin == JobOrigin.REPLAY


@pytest.mark.asyncio
async def test_replay_unknown_job(queue):
    assert await queue.replay_dead_letter("missing") is None
