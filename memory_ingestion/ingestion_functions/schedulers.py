"""Cron-triggered pipeline functions."""

from collections import Counter
from typing import Any, Dict, List

import inngest

from ..core.config import get_settings
from ..core.logging import get_logger
from ..services.container import get_services
from .client import inngest_client

logger = get_logger(__name__)
settings = get_settings()


@inngest_client.create_function(
    fn_id="reconcile_sources",
    trigger=inngest.TriggerCron(cron=settings.reconcile_cron),
    retries=0,
)
async def reconcile_sources(ctx: inngest.Context) -> Dict[str, Any]:
    """Run the delta reconciler for every source that is due."""
    ctx.logger.info("Running scheduled reconcile")

    async def _run() -> List[Dict[str, Any]]:
        results = await get_services().reconciler.run_due()
        return [result.model_dump(mode="json") for result in results]

    results = await ctx.step.run("reconcile-due-sources", _run)

    statuses = Counter(result["status"] for result in results)
    ctx.logger.info(f"Reconciled {len(results)} sources: {dict(statuses)}")
    return {
        "sources": len(results),
        "enqueued": sum(result["enqueued"] for result in results),
        "statuses": dict(statuses),
    }


@inngest_client.create_function(
    fn_id="renew_subscriptions",
    trigger=inngest.TriggerCron(cron=settings.renewal_cron),
    retries=0,
)
async def renew_subscriptions(ctx: inngest.Context) -> Dict[str, Any]:
    """Renew expiring push subscriptions and retry those left in fallback."""

    async def _renew() -> List[Dict[str, Any]]:
        renewed = await get_services().subscriptions.renew_due()
        return [s.model_dump(mode="json") for s in renewed]

    async def _recover() -> List[Dict[str, Any]]:
        recovered = await get_services().subscriptions.recover_fallbacks()
        return [s.model_dump(mode="json") for s in recovered]

    renewed = await ctx.step.run("renew-due-subscriptions", _renew)
    recovered = await ctx.step.run("recover-fallback-subscriptions", _recover)

    ctx.logger.info(f"Renewed {len(renewed)} subscriptions, retried {len(recovered)} fallbacks")
    return {
        "renewed": len(renewed),
        "recovered": len(recovered),
        "states": dict(Counter(s["state"] for s in renewed + recovered)),
    }


@inngest_client.create_function(
    fn_id="drain_ingestion_queue",
    trigger=inngest.TriggerCron(cron=settings.drain_cron),
    retries=0,
)
async def drain_ingestion_queue(ctx: inngest.Context) -> Dict[str, Any]:
    """Process whatever ingestion jobs are currently eligible."""

    async def _drain() -> Dict[str, int]:
        results = await get_services().pool.drain()
        return dict(Counter(result.outcome.value for result in results))

    outcomes = await ctx.step.run("drain-queue", _drain)
    return {"processed": sum(outcomes.values()), "outcomes": outcomes}


@inngest_client.create_function(
    fn_id="purge_idempotency_ledger",
    trigger=inngest.TriggerCron(cron=settings.ledger_purge_cron),
)
async def purge_idempotency_ledger(ctx: inngest.Context) -> Dict[str, Any]:
    """Drop idempotency records past their retention window."""

    async def _purge() -> int:
        return await get_services().ledger.purge_expired()

    removed = await ctx.step.run("purge-expired-records", _purge)
    ctx.logger.info(f"Purged {removed} expired idempotency records")
    return {"removed": removed}
