"""Data models for the ingestion service."""

from .source import SourceConfig, SourceKind, TenantContext, source_key
from .envelope import DocumentEnvelope, EnvelopeContent, EnvelopeContext, Participant
from .job import DeadLetter, IngestionJob, JobOrigin, JobOutcome, JobResult
from .ledger import IdempotencyRecord, RecordStatus, Reservation
from .cursor import DeltaCursor, DeltaItem, DeltaPage, ReconcileResult, ReconcileStatus
from .subscription import CreatedSubscription, Subscription, SubscriptionState
from .belief import (
    BeliefSnapshot,
    BeliefState,
    CorrectionAction,
    CorrectionEvent,
    CorrectionResult,
)
from .notification import GatewayAck, NotificationBatch, SourceNotification

__all__ = [
    "SourceConfig",
    "SourceKind",
    "TenantContext",
    "source_key",
    "DocumentEnvelope",
    "EnvelopeContent",
    "EnvelopeContext",
    "Participant",
    "DeadLetter",
    "IngestionJob",
    "JobOrigin",
    "JobOutcome",
    "JobResult",
    "IdempotencyRecord",
    "RecordStatus",
    "Reservation",
    "DeltaCursor",
    "DeltaItem",
    "DeltaPage",
    "ReconcileResult",
    "ReconcileStatus",
    "CreatedSubscription",
    "Subscription",
    "SubscriptionState",
    "BeliefSnapshot",
    "BeliefState",
    "CorrectionAction",
    "CorrectionEvent",
    "CorrectionResult",
    "GatewayAck",
    "NotificationBatch",
    "SourceNotification",
]
