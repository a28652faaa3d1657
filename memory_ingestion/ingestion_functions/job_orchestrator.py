"""Event-triggered pipeline functions."""

from typing import Any, Dict, List, Optional

import inngest

from ..core.logging import get_logger
from ..models.source import SourceKind
from ..services.container import get_services
from .client import inngest_client

logger = get_logger(__name__)


@inngest_client.create_function(
    fn_id="replay_dead_letters",
    trigger=inngest.TriggerEvent(event="ingestion/dead_letter.replay"),
    retries=3,
)
async def replay_dead_letters(ctx: inngest.Context) -> Dict[str, Any]:
    """Put dead-lettered jobs back on the queue.

    Event data: ``{"jobIds": [...]}`` or ``{"jobId": "..."}``.
    """
    data = ctx.event.data or {}
    job_ids: List[str] = list(data.get("jobIds") or [])
    if data.get("jobId"):
        job_ids.append(data["jobId"])

    if not job_ids:
        ctx.logger.info("Replay event carried no job ids")
        return {"replayed": [], "missing": []}

    async def _replay(job_id: str) -> Optional[str]:
        job = await get_services().queue.replay_dead_letter(job_id)
        return job.job_id if job else None

    replayed, missing = [], []
    for job_id in job_ids:
        result = await ctx.step.run(f"replay-{job_id}", _replay, job_id)
        (replayed if result else missing).append(job_id)

    if missing:
        ctx.logger.warning(f"No dead letter for {len(missing)} job ids")
    return {"replayed": replayed, "missing": missing}


@inngest_client.create_function(
    fn_id="reconcile_source",
    trigger=inngest.TriggerEvent(event="ingestion/source.reconcile"),
    retries=0,
)
async def reconcile_source(ctx: inngest.Context) -> Dict[str, Any]:
    """Reconcile one source on demand, e.g. right after it is enabled.

    Event data: ``{"sourceKind": "email", "tenantId": "..."}``.
    """
    data = ctx.event.data or {}
    source_kind = SourceKind(data["sourceKind"])
    tenant_id = data["tenantId"]

    async def _run() -> Dict[str, Any]:
        result = await get_services().reconciler.run(source_kind, tenant_id)
        return result.model_dump(mode="json")

    result = await ctx.step.run(f"reconcile-{source_kind.value}-{tenant_id}", _run)
    ctx.logger.info(f"Reconcile of {source_kind.value}:{tenant_id} finished {result['status']}")
    return result
