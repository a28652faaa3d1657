"""Tests for the shared source registry."""

import pytest

from memory_ingestion.core.registry import SourceRegistry
from memory_ingestion.models.source import SourceKind
from memory_ingestion.services.webhook_gateway import WebhookGateway, client_state_for

TENANT = "contoso"


@pytest.fixture
def other_process_registry(settings, registry):
    """A second registry on the same file, as the CLI process would hold."""
    return SourceRegistry(settings)


@pytest.mark.asyncio
async def test_disable_from_another_process_is_seen_immediately(registry, other_process_registry):
    assert registry.is_enabled(SourceKind.EMAIL, TENANT)

    await other_process_registry.disable(SourceKind.EMAIL, TENANT)

    assert not registry.is_enabled(SourceKind.EMAIL, TENANT)
    assert SourceKind.EMAIL not in {s.source_kind for s in registry.list_sources(enabled_only=True)}


@pytest.mark.asyncio
async def test_gateway_stops_enqueueing_after_external_disable(queue, registry, other_process_registry, settings):
    gateway = WebhookGateway(queue, registry, settings)
    await other_process_registry.disable(SourceKind.EMAIL, TENANT)

    ack = await gateway.receive(
        {
            "value": [
                {
                    "resourceId": "abc123",
                    "sourceKind": "email",
                    "tenant": TENANT,
                    "clientState": client_state_for("test-webhook-secret", SourceKind.EMAIL, TENANT),
                }
            ]
        }
    )

    assert ack.accepted == 0
    assert ack.skipped_disabled == 1
    assert await queue.depth() == 0


@pytest.mark.asyncio
async def test_write_does_not_revert_another_process_change(registry, other_process_registry, settings):
    await other_process_registry.disable(SourceKind.EMAIL, TENANT)

    await registry.enable(SourceKind.CHAT, "fabrikam", user_id="grace@fabrikam.com")

    fresh = SourceRegistry(settings)
    assert not fresh.is_enabled(SourceKind.EMAIL, TENANT)
    assert fresh.is_enabled(SourceKind.CHAT, "fabrikam")
    assert other_process_registry.is_enabled(SourceKind.CHAT, "fabrikam")


@pytest.mark.asyncio
async def test_enable_keeps_existing_user(registry):
    await registry.disable(SourceKind.NOTE, TENANT)

    config = await registry.enable(SourceKind.NOTE, TENANT)

    assert config.enabled
    assert config.user_id == "ada@contoso.com"


@pytest.mark.asyncio
async def test_disable_unknown_source_returns_none(registry):
    assert await registry.disable(SourceKind.NOTE, "nobody") is None


def test_missing_file_gives_empty_registry(settings):
    assert SourceRegistry(settings).list_sources() == []
