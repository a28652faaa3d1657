"""Health check and status endpoints."""

import datetime
from typing import Any, Dict

from fastapi import APIRouter, Depends

from .. import __version__
from ..services.container import IngestionServices
from .deps import get_ingestion_services

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> Dict[str, Any]:
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "memory-ingestion",
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        "version": __version__,
    }


@router.get("/status")
async def system_status(services: IngestionServices = Depends(get_ingestion_services)) -> Dict[str, Any]:
    """Queue depth, dead letters, and subscription and cursor state per source."""
    snapshot = await services.status()
    snapshot["status"] = "operational"
    snapshot["timestamp"] = datetime.datetime.now(datetime.timezone.utc).isoformat()
    return snapshot
