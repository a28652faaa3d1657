"""Webhook notification models as delivered by source platforms."""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .source import SourceKind


class SourceNotification(BaseModel):
    """One changed resource reported by a push notification."""
    model_config = ConfigDict(populate_by_name=True)

    resource_id: str = Field(..., min_length=1, alias="resourceId")
    source_kind: SourceKind = Field(..., alias="sourceKind")
    change_type: str = Field(default="updated", alias="changeType")
    tenant: str = Field(..., min_length=1)
    subscription_id: Optional[str] = Field(default=None, alias="subscriptionId")
    client_state: Optional[str] = Field(default=None, alias="clientState")


class NotificationBatch(BaseModel):
    """Body of a webhook delivery."""
    value: List[SourceNotification] = Field(..., min_length=1)


class GatewayAck(BaseModel):
    """Gateway answer for an accepted delivery."""
    accepted: int = 0
    skipped_disabled: int = 0
    job_ids: List[str] = Field(default_factory=list)
