"""Webhook intake: authenticate notifications and enqueue one job per resource."""

import asyncio
import hashlib
import hmac
from typing import Any, List, Optional

from pydantic import ValidationError

from ..core.config import Settings, get_settings
from ..core.errors import GatewayUnavailableError, WebhookAuthenticationError, WebhookValidationError
from ..core.logging import get_logger
from ..core.registry import SourceRegistry
from ..models.job import IngestionJob, JobOrigin
from ..models.notification import GatewayAck, NotificationBatch
from ..models.source import SourceKind, source_key
from .job_queue import JobQueue

logger = get_logger(__name__)


def client_state_for(secret: str, source_kind: SourceKind, tenant_id: str) -> str:
    """Shared secret handed to the platform when subscribing (kind, tenant)."""
    message = source_key(source_kind, tenant_id).encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class WebhookGateway:
    """Does the minimum synchronous work for a webhook delivery.

    No fetch and no ledger check happen here; both belong to the worker.
    The only storage touched is the queue insert, which is bounded by
    ``gateway_enqueue_timeout``.
    """

    def __init__(
        self,
        queue: JobQueue,
        registry: SourceRegistry,
        settings: Optional[Settings] = None,
    ):
        self.queue = queue
        self.registry = registry
        self.settings = settings or get_settings()

    def client_state(self, source_kind: SourceKind, tenant_id: str) -> str:
        return client_state_for(self.settings.webhook_secret.get_secret_value(), source_kind, tenant_id)

    @staticmethod
    def challenge(validation_token: str) -> str:
        """Answer a subscription validation handshake verbatim."""
        return validation_token

    def parse(self, body: Any) -> NotificationBatch:
        try:
            return NotificationBatch.model_validate(body)
        except ValidationError as e:
            raise WebhookValidationError(f"Malformed notification: {e.error_count()} error(s)") from e

    def authenticate(self, batch: NotificationBatch) -> None:
        for notification in batch.value:
            expected = self.client_state(notification.source_kind, notification.tenant)
            supplied = notification.client_state or ""
            if not hmac.compare_digest(expected.encode("utf-8"), supplied.encode("utf-8")):
                logger.warning(
                    "Notification failed client state check",
                    source=source_key(notification.source_kind, notification.tenant),
                    resource_id=notification.resource_id,
                )
                raise WebhookAuthenticationError("Invalid client state")

    async def receive(self, body: Any) -> GatewayAck:
        """Validate a delivery and enqueue jobs for its enabled resources.

        Raises:
            WebhookValidationError: body does not match the notification schema.
            WebhookAuthenticationError: any notification carries a bad secret.
            GatewayUnavailableError: the queue did not accept the jobs in time.
        """
        batch = self.parse(body)
        self.authenticate(batch)

        jobs: List[IngestionJob] = []
        skipped = 0
        for notification in batch.value:
            config = self.registry.get(notification.source_kind, notification.tenant)
            if config is None or not config.enabled:
                skipped += 1
                continue
            jobs.append(
                IngestionJob(
                    source_kind=notification.source_kind,
                    resource_id=notification.resource_id,
                    tenant=config.tenant,
                    change_type=notification.change_type,
                    origin=JobOrigin.WEBHOOK,
                )
            )

        if skipped:
            logger.info("Ignored notifications for disabled sources", skipped=skipped)

        try:
            job_ids = await asyncio.wait_for(
                self.queue.enqueue_many(jobs),
                timeout=self.settings.gateway_enqueue_timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error("Enqueue exceeded gateway budget", jobs=len(jobs))
            raise GatewayUnavailableError("Queue did not accept notifications in time") from e
        except Exception as e:
            logger.error("Enqueue failed", jobs=len(jobs), error=str(e))
            raise GatewayUnavailableError("Queue unavailable") from e

        logger.info("Accepted notifications", accepted=len(job_ids), skipped_disabled=skipped)
        return GatewayAck(accepted=len(job_ids), skipped_disabled=skipped, job_ids=job_ids)
