"""Webhook intake endpoint for source platform notifications."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse

from ..core.errors import GatewayUnavailableError, WebhookAuthenticationError, WebhookValidationError
from ..core.logging import get_logger
from ..services.container import IngestionServices
from .deps import get_ingestion_services

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = get_logger(__name__)


@router.post("/notifications", status_code=status.HTTP_202_ACCEPTED)
async def receive_notifications(
    request: Request,
    validation_token: Optional[str] = Query(default=None, alias="validationToken"),
    services: IngestionServices = Depends(get_ingestion_services),
) -> Any:
    """Accept a notification batch, or echo a subscription validation token."""
    if validation_token is not None:
        return PlainTextResponse(services.gateway.challenge(validation_token), status_code=200)

    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=422, detail="Notification body is not JSON")

    try:
        ack = await services.gateway.receive(body)
    except WebhookValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except WebhookAuthenticationError as e:
        raise HTTPException(status_code=401, detail=str(e))
    except GatewayUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e), headers={"Retry-After": "5"})

    response: Dict[str, Any] = ack.model_dump()
    return response
