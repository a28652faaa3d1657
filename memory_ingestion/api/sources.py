"""Source enablement endpoints."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..core.errors import SubscriptionStateError
from ..core.logging import get_logger
from ..models.source import SourceKind
from ..services.container import IngestionServices
from .deps import get_ingestion_services

router = APIRouter(prefix="/sources", tags=["sources"])
logger = get_logger(__name__)


class EnableSourceRequest(BaseModel):
    user_id: Optional[str] = None


@router.get("")
async def list_sources(services: IngestionServices = Depends(get_ingestion_services)) -> Dict[str, Any]:
    """List every configured (source kind, tenant) pair."""
    sources = [config.model_dump(mode="json") for config in services.registry.list_sources()]
    return {
        "sources": sources,
        "total": len(sources),
        "enabled": len([s for s in sources if s["enabled"]]),
    }


@router.post("/{source_kind}/{tenant_id}/enable")
async def enable_source(
    source_kind: SourceKind,
    tenant_id: str,
    request: Optional[EnableSourceRequest] = None,
    services: IngestionServices = Depends(get_ingestion_services),
) -> Dict[str, Any]:
    """Enable a source and create its push subscription."""
    user_id = request.user_id if request else None
    try:
        subscription = await services.subscriptions.enable(source_kind, tenant_id, user_id)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except SubscriptionStateError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return {
        "source": services.registry.get(source_kind, tenant_id).model_dump(mode="json"),
        "subscription": subscription.model_dump(mode="json"),
    }


@router.post("/{source_kind}/{tenant_id}/disable")
async def disable_source(
    source_kind: SourceKind,
    tenant_id: str,
    services: IngestionServices = Depends(get_ingestion_services),
) -> Dict[str, Any]:
    """Disable a source; queued jobs still drain."""
    if services.registry.get(source_kind, tenant_id) is None:
        raise HTTPException(status_code=404, detail=f"Unknown source {source_kind.value}:{tenant_id}")

    subscription = await services.subscriptions.disable(source_kind, tenant_id)
    return {
        "source": services.registry.get(source_kind, tenant_id).model_dump(mode="json"),
        "subscription": subscription.model_dump(mode="json"),
    }
