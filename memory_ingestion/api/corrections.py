"""Belief correction endpoint."""

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, ValidationError

from ..core.errors import (
    BeliefConflictError,
    BeliefNotActiveError,
    BeliefNotFoundError,
    CorrectionAlreadyAppliedError,
    StoreRejectedError,
    StoreUnavailableError,
)
from ..models.belief import CorrectionAction, CorrectionEvent
from ..services.container import IngestionServices
from .deps import get_ingestion_services

router = APIRouter(prefix="/beliefs", tags=["beliefs"])


class CorrectionRequest(BaseModel):
    action: CorrectionAction
    payload: Dict[str, Any] = Field(default_factory=dict)


@router.post("/{belief_id}/corrections")
async def apply_correction(
    belief_id: str,
    request: CorrectionRequest,
    services: IngestionServices = Depends(get_ingestion_services),
) -> Dict[str, Any]:
    """Apply a verify, reject or correct verdict to one belief."""
    try:
        event = CorrectionEvent(belief_id=belief_id, action=request.action, payload=request.payload)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))

    try:
        result = await services.corrections.apply(event)
    except BeliefNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except BeliefConflictError as e:
        raise HTTPException(status_code=409, detail={"error": str(e), "superseded_by": e.superseded_by})
    except (BeliefNotActiveError, CorrectionAlreadyAppliedError) as e:
        raise HTTPException(status_code=409, detail={"error": str(e)})
    except (StoreUnavailableError, StoreRejectedError) as e:
        raise HTTPException(status_code=502, detail=str(e))

    return result.model_dump(mode="json")
