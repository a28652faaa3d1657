"""Source configuration models."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class SourceKind(str, Enum):
    """Kinds of activity source the pipeline ingests."""
    CHAT = "chat"
    EMAIL = "email"
    CALENDAR = "calendar"
    NOTE = "note"


class TenantContext(BaseModel):
    """Identity a job acts on behalf of."""
    model_config = ConfigDict(frozen=True)

    tenant_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)


class SourceConfig(BaseModel):
    """Enablement record for one (source kind, tenant) pair.

    Gateway and reconciler read this before creating any work.
    """
    source_kind: SourceKind
    tenant_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    enabled: bool = False
    enabled_at: Optional[datetime] = None
    disabled_at: Optional[datetime] = None

    @property
    def key(self) -> str:
        return source_key(self.source_kind, self.tenant_id)

    @property
    def tenant(self) -> TenantContext:
        return TenantContext(tenant_id=self.tenant_id, user_id=self.user_id)


def source_key(source_kind: SourceKind, tenant_id: str) -> str:
    """Canonical "kind:tenant" key used for locks, secrets and logs."""
    return f"{SourceKind(source_kind).value}:{tenant_id}"
