"""Tests for the operator CLI."""

import asyncio

import httpx
import pytest
from click.testing import CliRunner

from memory_ingestion.cli import cli
from memory_ingestion.services.container import build_services
from tests.factories import make_job


@pytest.fixture
def services(settings, registry):
    http = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(503)))
    return build_services(settings, http_client=http, registry=registry)


@pytest.fixture
def invoke(settings, services):
    runner = CliRunner()

    def _invoke(*args):
        return runner.invoke(cli, list(args), obj={"settings": settings, "services": services})

    return _invoke


def test_status_shows_queue_and_sources(invoke, services):
    asyncio.run(services.queue.enqueue(make_job()))

    result = invoke("status")

    assert result.exit_code == 0, result.output
    assert "Queue depth: 1" in result.output
    assert "Sources" in result.output


def test_dead_letters_list_when_empty(invoke):
    result = invoke("dead-letters", "list")

    assert result.exit_code == 0
    assert "No dead letters" in result.output


def test_replay_unknown_dead_letter_fails(invoke):
    result = invoke("dead-letters", "replay", "missing")

    assert result.exit_code == 1
    assert "No dead letter missing" in result.output


def test_purge_ledger(invoke):
    result = invoke("purge-ledger")

    assert result.exit_code == 0
    assert "Removed 0 expired records" in result.output


def test_reconcile_kind_requires_tenant(invoke):
    result = invoke("reconcile", "--kind", "email")

    assert result.exit_code == 2
    assert "--kind and --tenant go together" in result.output


def test_reconcile_reports_failures_without_crashing(invoke):
    result = invoke("reconcile", "--kind", "email", "--tenant", "contoso")

    assert result.exit_code == 0, result.output
    assert "Reconcile results" in result.output


def test_worker_once_on_empty_queue(invoke):
    result = invoke("worker", "--once")

    assert result.exit_code == 0
    assert "Processed 0 jobs" in result.output


def test_enable_without_user_fails(invoke):
    result = invoke("enable", "note", "fabrikam")

    assert result.exit_code == 1
    assert "user_id is required" in result.output
