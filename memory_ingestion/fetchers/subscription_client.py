"""Push subscription calls against source platforms."""

from datetime import datetime
from typing import Dict, Optional

import httpx

from ..core.errors import EnvelopeValidationError, ItemGoneError, PermanentError, TransientSourceError
from ..core.logging import get_logger
from ..models.source import SourceKind, TenantContext
from ..models.subscription import CreatedSubscription
from ..processors.envelope_normalizer import parse_timestamp
from .base_fetcher import BaseFetcher, raise_for_source_status

logger = get_logger(__name__)


class SubscriptionClient:
    """Create, renew and delete push subscriptions.

    The resource and endpoint for each source kind come from its fetcher.
    """

    def __init__(self, client: httpx.AsyncClient, fetchers: Dict[SourceKind, BaseFetcher], timeout: float = 10.0):
        self.client = client
        self.fetchers = fetchers
        self.timeout = timeout

    def _fetcher(self, source_kind: SourceKind) -> BaseFetcher:
        return self.fetchers[SourceKind(source_kind)]

    async def _send(self, method: str, url: str, fetcher: BaseFetcher, json: Optional[dict] = None) -> httpx.Response:
        try:
            response = await self.client.request(
                method,
                url,
                json=json,
                headers=fetcher._headers(),
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise TransientSourceError(f"Timed out calling {method} {url}: {e}") from e
        except httpx.TransportError as e:
            raise TransientSourceError(f"Transport error calling {method} {url}: {e}") from e

        raise_for_source_status(response, resource=url)
        return response

    def _parse_created(self, response: httpx.Response) -> CreatedSubscription:
        try:
            body = response.json()
            return CreatedSubscription(
                external_subscription_id=str(body["id"]),
                expires_at=parse_timestamp(body["expirationDateTime"]),
            )
        except (ValueError, KeyError, TypeError, EnvelopeValidationError) as e:
            raise PermanentError(f"Unexpected subscription response: {e}") from e

    async def create(
        self,
        source_kind: SourceKind,
        tenant: TenantContext,
        notification_url: str,
        client_state: str,
        expires_at: datetime,
    ) -> CreatedSubscription:
        """Create a subscription and return the platform's id and expiry."""
        fetcher = self._fetcher(source_kind)
        body = {
            "changeType": "created,updated,deleted",
            "notificationUrl": notification_url,
            "resource": fetcher.subscription_resource(tenant),
            "expirationDateTime": expires_at.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "clientState": client_state,
        }
        response = await self._send("POST", fetcher.subscriptions_url, fetcher, json=body)
        created = self._parse_created(response)

        logger.info(
            "Created push subscription",
            source_kind=SourceKind(source_kind).value,
            tenant_id=tenant.tenant_id,
            external_subscription_id=created.external_subscription_id,
            expires_at=created.expires_at.isoformat(),
        )
        return created

    async def renew(
        self,
        source_kind: SourceKind,
        external_subscription_id: str,
        expires_at: datetime,
    ) -> CreatedSubscription:
        """Extend a subscription's expiry."""
        fetcher = self._fetcher(source_kind)
        url = f"{fetcher.subscriptions_url}/{external_subscription_id}"
        response = await self._send(
            "PATCH",
            url,
            fetcher,
            json={"expirationDateTime": expires_at.strftime("%Y-%m-%dT%H:%M:%SZ")},
        )
        return self._parse_created(response)

    async def delete(self, source_kind: SourceKind, external_subscription_id: str) -> None:
        """Delete a subscription; one that is already gone counts as deleted."""
        fetcher = self._fetcher(source_kind)
        url = f"{fetcher.subscriptions_url}/{external_subscription_id}"
        try:
            await self._send("DELETE", url, fetcher)
        except ItemGoneError:
            logger.info(
                "Subscription already gone at platform",
                source_kind=SourceKind(source_kind).value,
                external_subscription_id=external_subscription_id,
            )
