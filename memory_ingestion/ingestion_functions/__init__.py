"""Inngest functions driving the scheduled and on-demand pipeline work."""

from .client import inngest_client
from .job_orchestrator import reconcile_source, replay_dead_letters
from .schedulers import (
    drain_ingestion_queue,
    purge_idempotency_ledger,
    reconcile_sources,
    renew_subscriptions,
)

# Collect all functions for FastAPI integration
inngest_functions = [
    reconcile_sources,
    renew_subscriptions,
    drain_ingestion_queue,
    purge_idempotency_ledger,
    replay_dead_letters,
    reconcile_source,
]

__all__ = [
    "inngest_client",
    "inngest_functions",
    "reconcile_sources",
    "renew_subscriptions",
    "drain_ingestion_queue",
    "purge_idempotency_ledger",
    "replay_dead_letters",
    "reconcile_source",
]
