"""Pytest configuration and fixtures."""

import os
import tempfile
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

import pytest
import yaml

# Keep the process-wide settings (used by the Inngest client at import) out of the repo.
os.environ.setdefault("BASE_DIR", tempfile.mkdtemp(prefix="memory-ingestion-tests-"))
os.environ.setdefault("WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("LOG_FORMAT", "console")

from memory_ingestion.core.config import Settings  # noqa: E402
from memory_ingestion.core.registry import SourceRegistry  # noqa: E402
from memory_ingestion.core.storage import Database  # noqa: E402
from memory_ingestion.services.idempotency_ledger import IdempotencyLedger  # noqa: E402
from memory_ingestion.services.job_queue import JobQueue  # noqa: E402

TENANT_ID = "contoso"
USER_ID = "ada@contoso.com"


class FakeClock:
    """Callable clock the tests can move forward."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def write_sources(settings: Settings, entries: List[Dict[str, Any]]) -> None:
    settings.sources_path.parent.mkdir(parents=True, exist_ok=True)
    with open(settings.sources_path, "w", encoding="utf-8") as f:
        yaml.safe_dump({"sources": entries}, f)


@pytest.fixture
def settings(tmp_path):
    """Settings rooted in a temp dir, with zero backoff so retries run immediately."""
    return Settings(
        base_dir=tmp_path,
        webhook_secret="test-webhook-secret",
        public_base_url="https://ingest.test",
        graph_base_url="https://graph.test/v1.0",
        notes_base_url="https://notes.test",
        memory_base_url="https://memory.test",
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        retry_jitter=0.0,
        renewal_backoff_base=0.0,
        renewal_backoff_max=0.0,
        fetch_timeout=2.0,
        ingest_timeout=2.0,
        max_concurrent_jobs=2,
        log_format="console",
    )


@pytest.fixture
def registry(settings):
    """Registry with every source kind enabled for the test tenant."""
    write_sources(
        settings,
        [
            {"source_kind": kind, "tenant_id": TENANT_ID, "user_id": USER_ID, "enabled": True}
            for kind in ("chat", "email", "calendar", "note")
        ],
    )
    return SourceRegistry(settings)


@pytest.fixture
def db(settings):
    database = Database(settings.database_path)
    database.initialize()
    return database


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def queue(db, settings):
    return JobQueue(db, settings)


@pytest.fixture
def ledger(db, settings):
    return IdempotencyLedger(db, settings)
