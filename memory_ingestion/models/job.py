"""Ingestion job models for the durable queue."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from ..core.storage import utc_now
from .source import SourceKind, TenantContext


class JobOrigin(str, Enum):
    """Which path created the job."""
    WEBHOOK = "webhook"
    RECONCILER = "reconciler"
    REPLAY = "replay"


class JobOutcome(str, Enum):
    """How a single processing attempt ended."""
    INGESTED = "ingested"
    DUPLICATE = "duplicate"
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD_LETTERED = "dead_lettered"
    FAILED_PERMANENT = "failed_permanent"


class IngestionJob(BaseModel):
    """One unit of work: bring a single source item into memory."""
    job_id: str = Field(default_factory=lambda: uuid4().hex)
    source_kind: SourceKind
    resource_id: str = Field(..., min_length=1)
    tenant: TenantContext
    change_type: str = "updated"
    origin: JobOrigin = JobOrigin.WEBHOOK

    attempts: int = Field(default=0, ge=0)
    enqueued_at: datetime = Field(default_factory=utc_now)
    next_eligible_at: datetime = Field(default_factory=utc_now)

    # Populated while a worker holds the lease
    claimed_by: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def payload_json(self) -> str:
        """Original payload preserved in the queue and in dead letters."""
        return self.model_dump_json(
            include={"job_id", "source_kind", "resource_id", "tenant", "change_type", "origin", "enqueued_at"}
        )


class DeadLetter(BaseModel):
    """A job that exhausted its retries, kept for manual replay."""
    job: IngestionJob
    attempts: int
    last_error: Optional[str] = None
    dead_lettered_at: datetime


class JobResult(BaseModel):
    """Outcome of processing one claimed job."""
    job_id: str
    outcome: JobOutcome
    effect_id: Optional[str] = None
    error: Optional[str] = None
    retry_delay: Optional[float] = None
