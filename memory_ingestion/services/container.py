"""Wiring for the services one process shares."""

from functools import lru_cache
from typing import Any, Dict, Optional

import httpx

from ..core.config import Settings, get_settings
from ..core.logging import get_logger
from ..core.registry import SourceRegistry
from ..core.storage import Database
from ..fetchers import SubscriptionClient, build_fetchers
from ..models.source import source_key
from .belief_corrections import BeliefCorrections
from .idempotency_ledger import IdempotencyLedger
from .job_queue import JobQueue
from .memory_client import MemoryClient
from .reconciler import DeltaCursorStore, Reconciler
from .subscription_manager import SubscriptionManager, SubscriptionStore
from .webhook_gateway import WebhookGateway
from .worker import IngestionWorker, WorkerPool

logger = get_logger(__name__)


class IngestionServices:
    """Every component built once, around one database and one HTTP client."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        registry: Optional[SourceRegistry] = None,
    ):
        self.settings = settings or get_settings()
        self.http = http_client or httpx.AsyncClient(
            timeout=self.settings.fetch_timeout,
            follow_redirects=True,
        )
        self.db = Database(self.settings.database_path)
        self.registry = registry or SourceRegistry(self.settings)

        self.fetchers = build_fetchers(self.http, self.settings)
        self.memory = MemoryClient(self.http, self.settings)
        self.subscription_client = SubscriptionClient(
            self.http, self.fetchers, timeout=self.settings.subscription_timeout
        )

        self.ledger = IdempotencyLedger(self.db, self.settings)
        self.queue = JobQueue(self.db, self.settings)
        self.cursors = DeltaCursorStore(self.db)
        self.subscription_store = SubscriptionStore(self.db)

        self.worker = IngestionWorker(self.queue, self.ledger, self.fetchers, self.memory, self.settings)
        self.pool = WorkerPool(self.worker, self.settings)
        self.gateway = WebhookGateway(self.queue, self.registry, self.settings)
        self.reconciler = Reconciler(
            self.queue, self.ledger, self.registry, self.fetchers, self.cursors, self.settings
        )
        self.subscriptions = SubscriptionManager(
            self.subscription_store, self.subscription_client, self.registry, self.settings
        )
        self.corrections = BeliefCorrections(self.memory)

    def initialize(self) -> None:
        self.db.initialize()

    async def status(self) -> Dict[str, Any]:
        """Queue depth, dead letters, and per-source subscription and cursor state."""
        subscriptions = {
            source_key(s.source_kind, s.tenant_id): s for s in await self.subscription_store.list_all()
        }
        cursors = {source_key(c.source_kind, c.tenant_id): c for c in await self.cursors.list_all()}

        sources = []
        for config in self.registry.list_sources():
            subscription = subscriptions.get(config.key)
            cursor = cursors.get(config.key)
            sources.append(
                {
                    "source": config.key,
                    "source_kind": config.source_kind.value,
                    "tenant_id": config.tenant_id,
                    "enabled": config.enabled,
                    "subscription_state": subscription.state.value if subscription else "disabled",
                    "subscription_expires_at": (
                        subscription.expires_at.isoformat() if subscription and subscription.expires_at else None
                    ),
                    "cursor": cursor.cursor if cursor else None,
                    "cursor_advanced_at": (
                        cursor.last_advanced_at.isoformat() if cursor and cursor.last_advanced_at else None
                    ),
                    "last_reconciled_at": (
                        cursor.last_run_at.isoformat() if cursor and cursor.last_run_at else None
                    ),
                }
            )

        return {
            "queue_depth": await self.queue.depth(),
            "dead_letters": await self.queue.dead_letter_count(),
            "ledger_records": await self.ledger.count(),
            "sources": sources,
        }

    async def aclose(self) -> None:
        await self.http.aclose()


def build_services(
    settings: Optional[Settings] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    registry: Optional[SourceRegistry] = None,
) -> IngestionServices:
    services = IngestionServices(settings, http_client=http_client, registry=registry)
    services.initialize()
    logger.info("Ingestion services ready", database=str(services.db.path))
    return services


@lru_cache()
def get_services() -> IngestionServices:
    """Process-wide services instance."""
    return build_services()
