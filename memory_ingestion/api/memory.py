"""Read-through query endpoint for the memory store."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ..core.errors import StoreRejectedError, StoreUnavailableError
from ..models.source import TenantContext
from ..services.container import IngestionServices
from .deps import get_ingestion_services

router = APIRouter(prefix="/memory", tags=["memory"])


class MemoryQueryRequest(BaseModel):
    query: str = Field(..., min_length=1)
    filters: Dict[str, Any] = Field(default_factory=dict)
    tenant_id: Optional[str] = None
    user_id: Optional[str] = None
    limit: int = Field(default=10, ge=1, le=100)


@router.post("/query")
async def query_memory(
    request: MemoryQueryRequest,
    services: IngestionServices = Depends(get_ingestion_services),
) -> Dict[str, Any]:
    tenant = None
    if request.tenant_id:
        tenant = TenantContext(tenant_id=request.tenant_id, user_id=request.user_id or request.tenant_id)

    try:
        return await services.memory.query(request.query, request.filters, tenant=tenant, limit=request.limit)
    except (StoreUnavailableError, StoreRejectedError) as e:
        raise HTTPException(status_code=502, detail=str(e))
