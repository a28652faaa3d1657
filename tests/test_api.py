"""Tests for the HTTP API."""

import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient

from memory_ingestion.main import create_app
from memory_ingestion.models.source import SourceKind
from memory_ingestion.services.container import build_services
from memory_ingestion.services.webhook_gateway import client_state_for
from tests.factories import make_job

SECRET = "test-webhook-secret"


def platform_handler(request: httpx.Request) -> httpx.Response:
    """Stands in for the source platforms and the memory store."""
    host, path = request.url.host, request.url.path

    if path.endswith("/subscriptions") and request.method == "POST":
        return httpx.Response(201, json={"id": "sub-api", "expirationDateTime": "2030-01-01T00:00:00Z"})
    if "/subscriptions/" in path and request.method == "DELETE":
        return httpx.Response(204)
    if host == "memory.test" and path == "/memories/query":
        return httpx.Response(200, json={"results": [{"id": "mem-1", "content": "Bob prefers Thursday"}]})
    if host == "memory.test" and path == "/beliefs/B1":
        return httpx.Response(200, json={"id": "B1", "state": "superseded", "superseded_by": "B2"})
    return httpx.Response(404, json={"error": {"code": "NotFound"}})


@pytest.fixture
def services(settings, registry):
    http = httpx.AsyncClient(transport=httpx.MockTransport(platform_handler))
    return build_services(settings, http_client=http, registry=registry)


@pytest.fixture
def client(services):
    app = create_app(services, serve_inngest=False)
    with TestClient(app) as test_client:
        yield test_client


def notification(resource_id="abc123", kind="email", tenant="contoso", client_state=None):
    return {
        "resourceId": resource_id,
        "sourceKind": kind,
        "tenant": tenant,
        "clientState": client_state or client_state_for(SECRET, SourceKind(kind), tenant),
    }


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["service"] == "memory-ingestion"


# =============================================================================
# Webhooks
# =============================================================================


def test_validation_handshake_echoes_token(client):
    response = client.post("/webhooks/notifications", params={"validationToken": "token with spaces"})

    assert response.status_code == 200
    assert response.text == "token with spaces"
    assert response.headers["content-type"].startswith("text/plain")


def test_notification_is_accepted_and_queued(client):
    response = client.post("/webhooks/notifications", json={"value": [notification()]})

    assert response.status_code == 202
    assert response.json()["accepted"] == 1

    status = client.get("/status").json()
    assert status["queue_depth"] == 1
    assert status["dead_letters"] == 0
    assert len(status["sources"]) == 4


def test_forged_client_state_is_unauthorized(client):
    response = client.post("/webhooks/notifications", json={"value": [notification(client_state="forged")]})

    assert response.status_code == 401
    assert client.get("/status").json()["queue_depth"] == 0


@pytest.mark.parametrize(
    "kwargs",
    [
        {"content": b"not json", "headers": {"content-type": "application/json"}},
        {"json": {"value": []}},
        {"json": {"value": [{"sourceKind": "email"}]}},
    ],
)
def test_malformed_notification_is_unprocessable(client, kwargs):
    response = client.post("/webhooks/notifications", **kwargs)

    assert response.status_code == 422


def test_queue_unavailable_answers_503(client, services):
    async def broken(jobs):
        raise RuntimeError("database is locked")

    services.queue.enqueue_many = broken

    response = client.post("/webhooks/notifications", json={"value": [notification()]})

    assert response.status_code == 503
    assert response.headers["retry-after"] == "5"


# =============================================================================
# Sources
# =============================================================================


def test_list_sources(client):
    body = client.get("/sources").json()

    assert body["total"] == 4
    assert body["enabled"] == 4


def test_enable_new_source_creates_subscription(client):
    response = client.post("/sources/note/fabrikam/enable", json={"user_id": "grace@fabrikam.com"})

    assert response.status_code == 200
    body = response.json()
    assert body["source"]["enabled"] is True
    assert body["subscription"]["state"] == "active"
    assert body["subscription"]["external_subscription_id"] == "sub-api"


def test_enable_without_user_is_unprocessable(client):
    response = client.post("/sources/note/fabrikam/enable")

    assert response.status_code == 422


def test_disable_source(client):
    response = client.post("/sources/email/contoso/disable")

    assert response.status_code == 200
    assert response.json()["source"]["enabled"] is False
    assert response.json()["subscription"]["state"] == "disabled"


def test_disable_unknown_source_is_not_found(client):
    assert client.post("/sources/email/nobody/disable").status_code == 404


# =============================================================================
# Dead letters
# =============================================================================


def test_dead_letter_listing_and_replay(client, services):
    job = make_job("abc123")

    async def seed():
        await services.queue.enqueue(job)
        await services.queue.dead_letter(job, "TransientSourceError: 503", 6)

    asyncio.run(seed())

    listing = client.get("/dead-letters").json()
    assert listing["total"] == 1
    assert listing["dead_letters"][0]["job"]["resource_id"] == "abc123"

    replay = client.post(f"/dead-letters/{job.job_id}/replay")
    assert replay.status_code == 200
    assert replay.json()["job"]["attempts"] == 0
    assert client.get("/status").json()["queue_depth"] == 1


def test_replay_unknown_dead_letter_is_not_found(client):
    assert client.post("/dead-letters/missing/replay").status_code == 404


# =============================================================================
# Corrections and queries
# =============================================================================


def test_correction_on_superseded_belief_conflicts(client):
    response = client.post("/beliefs/B1/corrections", json={"action": "reject"})

    assert response.status_code == 409
    assert response.json()["detail"]["superseded_by"] == "B2"


def test_correct_without_content_is_unprocessable(client):
    response = client.post("/beliefs/B1/corrections", json={"action": "correct", "payload": {}})

    assert response.status_code == 422


def test_correction_on_unknown_belief_is_not_found(client):
    response = client.post("/beliefs/B404/corrections", json={"action": "verify"})

    assert response.status_code == 404


def test_memory_query(client):
    response = client.post("/memory/query", json={"query": "when does Bob meet", "tenant_id": "contoso"})

    assert response.status_code == 200
    assert response.json()["results"][0]["id"] == "mem-1"
