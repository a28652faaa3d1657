"""Dead-letter inspection and replay endpoints."""

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Query

from ..services.container import IngestionServices
from .deps import get_ingestion_services

router = APIRouter(prefix="/dead-letters", tags=["dead-letters"])


@router.get("")
async def list_dead_letters(
    limit: int = Query(default=100, ge=1, le=1000),
    services: IngestionServices = Depends(get_ingestion_services),
) -> Dict[str, Any]:
    dead_letters = await services.queue.list_dead_letters(limit=limit)
    return {
        "dead_letters": [d.model_dump(mode="json") for d in dead_letters],
        "total": await services.queue.dead_letter_count(),
    }


@router.post("/{job_id}/replay")
async def replay_dead_letter(
    job_id: str,
    services: IngestionServices = Depends(get_ingestion_services),
) -> Dict[str, Any]:
    """Re-enqueue a dead-lettered job with a fresh attempt count."""
    job = await services.queue.replay_dead_letter(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"No dead letter {job_id}")
    return {"replayed": True, "job": job.model_dump(mode="json")}
