"""Idempotency ledger models."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel

from .source import SourceKind


class Reservation(str, Enum):
    """Answer from ``check_and_reserve``."""
    FRESH = "fresh"
    DUPLICATE = "duplicate"


class RecordStatus(str, Enum):
    PENDING = "pending"
    COMMITTED = "committed"


class IdempotencyRecord(BaseModel):
    """Marker that a source item produced (or is producing) a memory effect."""
    source_kind: SourceKind
    source_id: str
    status: RecordStatus
    first_seen_at: datetime
    expires_at: datetime

    def is_live(self, now: datetime) -> bool:
        return self.expires_at > now
