"""Delta synchronization models."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from .source import SourceKind


class DeltaCursor(BaseModel):
    """Continuation token for one (source kind, tenant) pair."""
    source_kind: SourceKind
    tenant_id: str
    cursor: Optional[str] = None
    last_advanced_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    backfilled_at: Optional[datetime] = None


class DeltaItem(BaseModel):
    """One changed item reported by a delta query."""
    resource_id: str
    change_type: str = "updated"
    removed: bool = False


class DeltaPage(BaseModel):
    """A page of changes plus the cursor that follows it."""
    items: List[DeltaItem] = Field(default_factory=list)
    next_cursor: Optional[str] = None
    has_more: bool = False


class ReconcileStatus(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


class ReconcileResult(BaseModel):
    """Summary of one reconciler run."""
    source_kind: SourceKind
    tenant_id: str
    status: ReconcileStatus
    pages: int = 0
    enqueued: int = 0
    already_ledgered: int = 0
    removed: int = 0
    backfill: bool = False
    rebackfilled: bool = False
    cursor: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None
