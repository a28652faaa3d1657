"""Services layer: queue, ledger, workers, gateway, reconciler and friends."""

from .belief_corrections import BeliefCorrections
from .container import IngestionServices, build_services, get_services
from .idempotency_ledger import IdempotencyLedger
from .job_queue import JobQueue, backoff_delay
from .memory_client import MemoryClient
from .reconciler import DeltaCursorStore, Reconciler
from .subscription_manager import SubscriptionManager, SubscriptionStore
from .webhook_gateway import WebhookGateway, client_state_for
from .worker import IngestionWorker, WorkerPool

__all__ = [
    "BeliefCorrections",
    "IngestionServices",
    "build_services",
    "get_services",
    "IdempotencyLedger",
    "JobQueue",
    "backoff_delay",
    "MemoryClient",
    "DeltaCursorStore",
    "Reconciler",
    "SubscriptionManager",
    "SubscriptionStore",
    "WebhookGateway",
    "client_state_for",
    "IngestionWorker",
    "WorkerPool",
]
