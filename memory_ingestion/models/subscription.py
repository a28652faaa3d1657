"""Push-notification subscription models."""

from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, FrozenSet, Optional

from pydantic import BaseModel, Field

from ..core.storage import utc_now
from .source import SourceKind


class SubscriptionState(str, Enum):
    """Lifecycle states of a push subscription."""
    DISABLED = "disabled"
    PENDING_CREATE = "pending_create"
    ACTIVE = "active"
    RENEWING = "renewing"
    EXPIRED_FALLBACK = "expired_fallback"


# Any state may also move to DISABLED.
ALLOWED_TRANSITIONS: Dict[SubscriptionState, FrozenSet[SubscriptionState]] = {
    SubscriptionState.DISABLED: frozenset({SubscriptionState.PENDING_CREATE}),
    SubscriptionState.PENDING_CREATE: frozenset(
        {SubscriptionState.ACTIVE, SubscriptionState.EXPIRED_FALLBACK}
    ),
    SubscriptionState.ACTIVE: frozenset(
        {SubscriptionState.RENEWING, SubscriptionState.EXPIRED_FALLBACK}
    ),
    SubscriptionState.RENEWING: frozenset(
        {SubscriptionState.ACTIVE, SubscriptionState.EXPIRED_FALLBACK}
    ),
    SubscriptionState.EXPIRED_FALLBACK: frozenset({SubscriptionState.PENDING_CREATE}),
}


def can_transition(current: SubscriptionState, target: SubscriptionState) -> bool:
    if target == SubscriptionState.DISABLED:
        return True
    return target in ALLOWED_TRANSITIONS[current]


class Subscription(BaseModel):
    """Push subscription held with a source platform for one (kind, tenant)."""
    source_kind: SourceKind
    tenant_id: str
    state: SubscriptionState = SubscriptionState.DISABLED
    external_subscription_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    renewal_attempts: int = 0
    last_error: Optional[str] = None
    updated_at: datetime = Field(default_factory=utc_now)

    def lapsed(self, now: datetime) -> bool:
        """The platform has already expired a subscription we still hold as live."""
        if self.state not in (SubscriptionState.ACTIVE, SubscriptionState.RENEWING):
            return False
        return self.expires_at is not None and self.expires_at <= now

    def due_for_renewal(self, now: datetime, lead: timedelta) -> bool:
        if self.state != SubscriptionState.ACTIVE or self.expires_at is None:
            return False
        return self.expires_at - now <= lead

    def renewal_stalled(self, now: datetime, stale: timedelta) -> bool:
        """A renewal left in flight, e.g. by a process that died mid-call."""
        return self.state == SubscriptionState.RENEWING and now - self.updated_at >= stale


class CreatedSubscription(BaseModel):
    """What the platform answered when a subscription was created or renewed."""
    external_subscription_id: str
    expires_at: datetime
