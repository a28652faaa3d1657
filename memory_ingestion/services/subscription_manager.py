"""Push subscription lifecycle: create, renew, fall back, retire."""

import sqlite3
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..core.config import Settings, get_settings
from ..core.errors import SubscriptionStateError, TransientError
from ..core.logging import get_logger
from ..core.registry import SourceRegistry
from ..core.storage import Database, from_db_time, to_db_time, utc_now
from ..fetchers.subscription_client import SubscriptionClient
from ..models.source import SourceConfig, SourceKind, source_key
from ..models.subscription import Subscription, SubscriptionState, can_transition
from .webhook_gateway import client_state_for

logger = get_logger(__name__)


class SubscriptionStore:
    """Subscription records in the shared database."""

    def __init__(self, db: Database, clock: Callable[[], datetime] = utc_now):
        self.db = db
        self.clock = clock

    @staticmethod
    def _from_row(row: sqlite3.Row) -> Subscription:
        return Subscription(
            source_kind=row["source_kind"],
            tenant_id=row["tenant_id"],
            state=row["state"],
            external_subscription_id=row["external_subscription_id"],
            expires_at=from_db_time(row["expires_at"]),
            renewal_attempts=row["renewal_attempts"],
            last_error=row["last_error"],
            updated_at=from_db_time(row["updated_at"]),
        )

    async def get(self, source_kind: SourceKind, tenant_id: str) -> Optional[Subscription]:
        kind = SourceKind(source_kind).value

        def _get(conn: sqlite3.Connection):
            return conn.execute(
                "SELECT * FROM subscriptions WHERE source_kind = ? AND tenant_id = ?",
                (kind, tenant_id),
            ).fetchone()

        row = await self.db.run(_get)
        return self._from_row(row) if row is not None else None

    async def save(self, subscription: Subscription) -> Subscription:
        subscription = subscription.model_copy(update={"updated_at": self.clock()})

        def _save(conn: sqlite3.Connection) -> None:
            conn.execute(
                "INSERT OR REPLACE INTO subscriptions (source_kind, tenant_id, state, external_subscription_id, "
                "expires_at, renewal_attempts, last_error, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    subscription.source_kind.value,
                    subscription.tenant_id,
                    subscription.state.value,
                    subscription.external_subscription_id,
                    to_db_time(subscription.expires_at),
                    subscription.renewal_attempts,
                    subscription.last_error,
                    to_db_time(subscription.updated_at),
                ),
            )

        await self.db.run(_save)
        return subscription

    async def list_all(self) -> List[Subscription]:
        rows = await self.db.run(
            lambda conn: conn.execute("SELECT * FROM subscriptions ORDER BY source_kind, tenant_id").fetchall()
        )
        return [self._from_row(row) for row in rows]


class SubscriptionManager:
    """Keeps one push subscription alive per enabled (kind, tenant).

    When creation or renewal keeps failing the subscription moves to
    ``expired_fallback`` and the reconciler alone covers the source until
    a later ``ensure_active`` succeeds.
    """

    def __init__(
        self,
        store: SubscriptionStore,
        client: SubscriptionClient,
        registry: SourceRegistry,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.client = client
        self.registry = registry
        self.settings = settings or get_settings()
        self.clock = clock

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.settings.max_renewal_attempts),
            wait=wait_exponential(
                multiplier=self.settings.renewal_backoff_base,
                max=self.settings.renewal_backoff_max,
            ),
            retry=retry_if_exception_type(TransientError),
            reraise=True,
        )

    def _expiry(self) -> datetime:
        return self.clock() + timedelta(minutes=self.settings.subscription_lifetime_minutes)

    async def _transition(self, subscription: Subscription, target: SubscriptionState, **updates) -> Subscription:
        if not can_transition(subscription.state, target):
            raise SubscriptionStateError(
                f"Cannot move {source_key(subscription.source_kind, subscription.tenant_id)} "
                f"from {subscription.state.value} to {target.value}"
            )
        updated = subscription.model_copy(update={"state": target, **updates})
        saved = await self.store.save(updated)
        logger.info(
            "Subscription state changed",
            source=source_key(saved.source_kind, saved.tenant_id),
            previous_state=subscription.state.value,
            state=saved.state.value,
        )
        return saved

    async def _load(self, source_kind: SourceKind, tenant_id: str) -> Subscription:
        existing = await self.store.get(source_kind, tenant_id)
        return existing or Subscription(source_kind=SourceKind(source_kind), tenant_id=tenant_id)

    async def enable(self, source_kind: SourceKind, tenant_id: str, user_id: Optional[str] = None) -> Subscription:
        """Enable the source and bring its push subscription up."""
        await self.registry.enable(source_kind, tenant_id, user_id)
        return await self.ensure_active(source_kind, tenant_id)

    async def disable(self, source_kind: SourceKind, tenant_id: str) -> Subscription:
        """Disable the source and retire its push subscription."""
        await self.registry.disable(source_kind, tenant_id)
        subscription = await self._load(source_kind, tenant_id)
        await self._delete_external(subscription)
        return await self._transition(
            subscription,
            SubscriptionState.DISABLED,
            external_subscription_id=None,
            expires_at=None,
            renewal_attempts=0,
        )

    async def ensure_active(self, source_kind: SourceKind, tenant_id: str) -> Subscription:
        """Create a subscription for an enabled source that does not have a live one."""
        config = self.registry.get(source_kind, tenant_id)
        if config is None or not config.enabled:
            raise SubscriptionStateError(f"{source_key(source_kind, tenant_id)} is not enabled")

        subscription = await self._load(source_kind, tenant_id)
        if subscription.lapsed(self.clock()):
            subscription = await self._lapse(subscription)
        if subscription.state in (SubscriptionState.ACTIVE, SubscriptionState.RENEWING):
            return subscription

        if subscription.state != SubscriptionState.PENDING_CREATE:
            subscription = await self._transition(subscription, SubscriptionState.PENDING_CREATE, last_error=None)
        return await self._create(subscription, config)

    async def _create(self, subscription: Subscription, config: SourceConfig) -> Subscription:
        client_state = client_state_for(
            self.settings.webhook_secret.get_secret_value(), config.source_kind, config.tenant_id
        )
        attempts = 0
        try:
            async for attempt in self._retrying():
                with attempt:
                    attempts += 1
                    created = await self.client.create(
                        config.source_kind,
                        config.tenant,
                        notification_url=self.settings.webhook_url,
                        client_state=client_state,
                        expires_at=self._expiry(),
                    )
        except Exception as e:
            return await self._fallback(subscription.model_copy(update={"renewal_attempts": attempts}), e)

        return await self._transition(
            subscription,
            SubscriptionState.ACTIVE,
            external_subscription_id=created.external_subscription_id,
            expires_at=created.expires_at,
            renewal_attempts=0,
            last_error=None,
        )

    async def _renew(self, subscription: Subscription) -> Subscription:
        if subscription.state != SubscriptionState.RENEWING:
            subscription = await self._transition(subscription, SubscriptionState.RENEWING)
        try:
            async for attempt in self._retrying():
                with attempt:
                    subscription = await self.store.save(
                        subscription.model_copy(update={"renewal_attempts": subscription.renewal_attempts + 1})
                    )
                    renewed = await self.client.renew(
                        subscription.source_kind,
                        subscription.external_subscription_id,
                        expires_at=self._expiry(),
                    )
        except Exception as e:
            return await self._fallback(subscription, e)

        return await self._transition(
            subscription,
            SubscriptionState.ACTIVE,
            expires_at=renewed.expires_at,
            renewal_attempts=0,
            last_error=None,
        )

    async def _delete_external(self, subscription: Subscription) -> None:
        if not subscription.external_subscription_id:
            return
        try:
            await self.client.delete(subscription.source_kind, subscription.external_subscription_id)
        except Exception as e:
            logger.warning(
                "Could not delete external subscription",
                source=source_key(subscription.source_kind, subscription.tenant_id),
                external_subscription_id=subscription.external_subscription_id,
                error=str(e),
            )

    async def _lapse(self, subscription: Subscription) -> Subscription:
        logger.warning(
            "Subscription expired at the platform",
            source=source_key(subscription.source_kind, subscription.tenant_id),
            state=subscription.state.value,
            expires_at=subscription.expires_at.isoformat() if subscription.expires_at else None,
        )
        await self._delete_external(subscription)
        return await self._transition(
            subscription,
            SubscriptionState.EXPIRED_FALLBACK,
            external_subscription_id=None,
            expires_at=None,
            last_error="Subscription lapsed before it was renewed",
        )

    async def _fallback(self, subscription: Subscription, error: Exception) -> Subscription:
        message = f"{type(error).__name__}: {error}"
        logger.warning(
            "Subscription falling back to reconciler-only coverage",
            source=source_key(subscription.source_kind, subscription.tenant_id),
            attempts=subscription.renewal_attempts,
            error=message,
        )
        await self._delete_external(subscription)
        return await self._transition(
            subscription,
            SubscriptionState.EXPIRED_FALLBACK,
            external_subscription_id=None,
            expires_at=None,
            last_error=message,
        )

    async def renew_due(self) -> List[Subscription]:
        """Renew subscriptions near expiry and pick up renewals left in flight.

        A subscription the platform already expired cannot be renewed; it is
        re-created if its source is still enabled.
        """
        now = self.clock()
        lead = timedelta(minutes=self.settings.renewal_lead_minutes)
        stale = timedelta(minutes=self.settings.renewal_stale_minutes)
        renewed = []
        for subscription in await self.store.list_all():
            if subscription.lapsed(now):
                if self.registry.is_enabled(subscription.source_kind, subscription.tenant_id):
                    renewed.append(await self.ensure_active(subscription.source_kind, subscription.tenant_id))
                else:
                    renewed.append(await self._lapse(subscription))
            elif subscription.renewal_stalled(now, stale):
                logger.warning(
                    "Resuming stalled renewal",
                    source=source_key(subscription.source_kind, subscription.tenant_id),
                    updated_at=subscription.updated_at.isoformat(),
                )
                renewed.append(await self._renew(subscription))
            elif subscription.due_for_renewal(now, lead):
                renewed.append(await self._renew(subscription))
        return renewed

    async def recover_fallbacks(self) -> List[Subscription]:
        """Try to re-create subscriptions of enabled sources left in fallback."""
        recovered = []
        for subscription in await self.store.list_all():
            if subscription.state != SubscriptionState.EXPIRED_FALLBACK:
                continue
            if not self.registry.is_enabled(subscription.source_kind, subscription.tenant_id):
                continue
            recovered.append(await self.ensure_active(subscription.source_kind, subscription.tenant_id))
        return recovered

    async def list_subscriptions(self) -> List[Subscription]:
        return await self.store.list_all()
