"""Tests for push subscription lifecycle management."""

from datetime import timedelta
from unittest.mock import AsyncMock, Mock

import pytest

from memory_ingestion.core.errors import (
    AuthorizationRevokedError,
    SubscriptionStateError,
    TransientSourceError,
)
from memory_ingestion.models.cursor import DeltaItem, DeltaPage, ReconcileStatus
from memory_ingestion.models.source import SourceKind
from memory_ingestion.models.subscription import CreatedSubscription, Subscription, SubscriptionState
from memory_ingestion.services.reconciler import DeltaCursorStore, Reconciler
from memory_ingestion.services.subscription_manager import SubscriptionManager, SubscriptionStore
from memory_ingestion.services.webhook_gateway import client_state_for

TENANT = "contoso"


@pytest.fixture
def store(db, clock):
    return SubscriptionStore(db, clock)


@pytest.fixture
def client(clock):
    client = Mock()
    client.create = AsyncMock(
        return_value=CreatedSubscription(external_subscription_id="sub-1", expires_at=clock.now + timedelta(hours=48))
    )
    client.renew = AsyncMock(
        return_value=CreatedSubscription(external_subscription_id="sub-1", expires_at=clock.now + timedelta(hours=96))
    )
    client.delete = AsyncMock(return_value=None)
    return client


@pytest.fixture
def manager(store, client, registry, settings, clock):
    return SubscriptionManager(store, client, registry, settings, clock)


async def activate(manager, kind=SourceKind.EMAIL):
    subscription = await manager.ensure_active(kind, TENANT)
    assert subscription.state == SubscriptionState.ACTIVE
    return subscription


# =============================================================================
# Creation
# =============================================================================


@pytest.mark.asyncio
async def test_ensure_active_creates_subscription(manager, client, store, settings):
    subscription = await activate(manager)

    assert subscription.external_subscription_id == "sub-1"
    assert subscription.renewal_attempts == 0

    _, kwargs = client.create.await_args
    assert kwargs["notification_url"] == "https://ingest.test/webhooks/notifications"
    assert kwargs["client_state"] == client_state_for("test-webhook-secret", SourceKind.EMAIL, TENANT)
    assert (await store.get(SourceKind.EMAIL, TENANT)).state == SubscriptionState.ACTIVE


@pytest.mark.asyncio
async def test_ensure_active_is_a_noop_when_already_active(manager, client):
    await activate(manager)
    await activate(manager)

    assert client.create.await_count == 1


@pytest.mark.asyncio
async def test_ensure_active_requires_enabled_source(manager, registry):
    await registry.disable(SourceKind.NOTE, TENANT)

    with pytest.raises(SubscriptionStateError):
        await manager.ensure_active(SourceKind.NOTE, TENANT)


@pytest.mark.asyncio
async def test_create_failure_falls_back(manager, client, settings):
    client.create.side_effect = TransientSourceError("503")

    subscription = await manager.ensure_active(SourceKind.CHAT, TENANT)

    assert subscription.state == SubscriptionState.EXPIRED_FALLBACK
    assert subscription.renewal_attempts == settings.max_renewal_attempts
    assert client.create.await_count == settings.max_renewal_attempts
    assert "503" in subscription.last_error


@pytest.mark.asyncio
async def test_enable_registers_source_and_subscribes(manager, registry):
    subscription = await manager.enable(SourceKind.NOTE, "fabrikam", user_id="grace@fabrikam.com")

    assert subscription.state == SubscriptionState.ACTIVE
    assert registry.is_enabled(SourceKind.NOTE, "fabrikam")


@pytest.mark.asyncio
async def test_enable_without_user_is_rejected(manager):
    with pytest.raises(ValueError):
        await manager.enable(SourceKind.NOTE, "fabrikam")


# =============================================================================
# Renewal
# =============================================================================


@pytest.mark.asyncio
async def test_renew_due_extends_expiring_subscription(manager, client, clock, settings):
    created_at = clock.now
    await activate(manager)
    clock.advance(hours=48, minutes=-settings.renewal_lead_minutes)

    [renewed] = await manager.renew_due()

    assert renewed.state == SubscriptionState.ACTIVE
    assert renewed.renewal_attempts == 0
    assert renewed.expires_at == created_at + timedelta(hours=96)
    client.renew.assert_awaited_once()


@pytest.mark.asyncio
async def test_renew_due_skips_subscriptions_far_from_expiry(manager, client):
    await activate(manager)

    assert await manager.renew_due() == []
    client.renew.assert_not_awaited()


@pytest.mark.asyncio
async def test_renewal_failures_fall_back_and_reconciler_keeps_covering(
    manager, client, clock, settings, db, queue, ledger, registry
):
    await activate(manager)
    client.renew.side_effect = TransientSourceError("503 Service Unavailable")
    clock.advance(hours=47, minutes=30)

    [fallback] = await manager.renew_due()

    assert fallback.state == SubscriptionState.EXPIRED_FALLBACK
    assert fallback.renewal_attempts == settings.max_renewal_attempts
    assert fallback.external_subscription_id is None
    assert client.renew.await_count == settings.max_renewal_attempts
    client.delete.assert_awaited_once_with(SourceKind.EMAIL, "sub-1")

    fetcher = Mock()
    fetcher.delta_query = AsyncMock(
        return_value=DeltaPage(items=[DeltaItem(resource_id="m-missed")], next_cursor="E1")
    )
    reconciler = Reconciler(
        queue, ledger, registry, {SourceKind.EMAIL: fetcher}, DeltaCursorStore(db, clock), settings, clock
    )
    result = await reconciler.run(SourceKind.EMAIL, TENANT)

    assert result.status == ReconcileStatus.COMPLETED
    assert result.enqueued == 1


@pytest.mark.asyncio
async def test_permanent_renewal_error_falls_back_immediately(manager, client, clock):
    await activate(manager)
    client.renew.side_effect = AuthorizationRevokedError("403")
    clock.advance(hours=47, minutes=30)

    [fallback] = await manager.renew_due()

    assert fallback.state == SubscriptionState.EXPIRED_FALLBACK
    assert fallback.renewal_attempts == 1
    assert client.renew.await_count == 1


@pytest.mark.asyncio
async def test_recover_fallbacks_recreates_subscription(manager, client):
    client.create.side_effect = [TransientSourceError("503")] * 5 + [
        CreatedSubscription(external_subscription_id="sub-2", expires_at=manager.clock() + timedelta(hours=48))
    ]
    await manager.ensure_active(SourceKind.EMAIL, TENANT)

    [recovered] = await manager.recover_fallbacks()

    assert recovered.state == SubscriptionState.ACTIVE
    assert recovered.external_subscription_id == "sub-2"
    assert recovered.last_error is None


@pytest.mark.asyncio
async def test_renewal_left_in_flight_past_expiry_is_recreated(manager, client, store, clock):
    subscription = await activate(manager)
    await store.save(subscription.model_copy(update={"state": SubscriptionState.RENEWING}))
    clock.advance(hours=50)
    client.create.return_value = CreatedSubscription(
        external_subscription_id="sub-2", expires_at=clock.now + timedelta(hours=48)
    )

    [recreated] = await manager.renew_due()

    assert recreated.state == SubscriptionState.ACTIVE
    assert recreated.external_subscription_id == "sub-2"
    assert client.create.await_count == 2
    client.renew.assert_not_awaited()
    client.delete.assert_awaited_once_with(SourceKind.EMAIL, "sub-1")
    assert (await store.get(SourceKind.EMAIL, TENANT)).state == SubscriptionState.ACTIVE


@pytest.mark.asyncio
async def test_stalled_renewal_is_resumed(manager, client, store, clock, settings):
    subscription = await activate(manager)
    await store.save(subscription.model_copy(update={"state": SubscriptionState.RENEWING, "renewal_attempts": 1}))
    clock.advance(minutes=settings.renewal_stale_minutes)

    [renewed] = await manager.renew_due()

    assert renewed.state == SubscriptionState.ACTIVE
    assert renewed.renewal_attempts == 0
    client.renew.assert_awaited_once()


@pytest.mark.asyncio
async def test_recent_renewal_in_flight_is_left_alone(manager, client, store, clock):
    subscription = await activate(manager)
    await store.save(subscription.model_copy(update={"state": SubscriptionState.RENEWING}))
    clock.advance(minutes=1)

    assert await manager.renew_due() == []
    client.renew.assert_not_awaited()


@pytest.mark.asyncio
async def test_ensure_active_recreates_expired_subscription(manager, client, clock):
    await activate(manager)
    clock.advance(hours=49)
    client.create.return_value = CreatedSubscription(
        external_subscription_id="sub-2", expires_at=clock.now + timedelta(hours=48)
    )

    subscription = await manager.ensure_active(SourceKind.EMAIL, TENANT)

    assert subscription.state == SubscriptionState.ACTIVE
    assert subscription.external_subscription_id == "sub-2"
    assert client.create.await_count == 2


@pytest.mark.asyncio
async def test_expired_subscription_of_disabled_source_falls_back(manager, client, registry, clock):
    await activate(manager)
    await registry.disable(SourceKind.EMAIL, TENANT)
    clock.advance(hours=49)

    [lapsed] = await manager.renew_due()

    assert lapsed.state == SubscriptionState.EXPIRED_FALLBACK
    assert lapsed.external_subscription_id is None
    assert client.create.await_count == 1


# =============================================================================
# Disable and transitions
# =============================================================================


@pytest.mark.asyncio
async def test_disable_deletes_external_subscription(manager, client, registry):
    await activate(manager)

    subscription = await manager.disable(SourceKind.EMAIL, TENANT)

    assert subscription.state == SubscriptionState.DISABLED
    assert subscription.external_subscription_id is None
    assert not registry.is_enabled(SourceKind.EMAIL, TENANT)
    client.delete.assert_awaited_once_with(SourceKind.EMAIL, "sub-1")


@pytest.mark.asyncio
async def test_disable_tolerates_failed_external_delete(manager, client):
    await activate(manager)
    client.delete.side_effect = TransientSourceError("timeout")

    subscription = await manager.disable(SourceKind.EMAIL, TENANT)

    assert subscription.state == SubscriptionState.DISABLED


@pytest.mark.asyncio
async def test_invalid_transition_is_rejected(manager):
    active = Subscription(source_kind=SourceKind.EMAIL, tenant_id=TENANT, state=SubscriptionState.ACTIVE)

    with pytest.raises(SubscriptionStateError):
        await manager._transition(active, SubscriptionState.PENDING_CREATE)
