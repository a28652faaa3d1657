"""HTTP client for the external memory store."""

from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError

from ..core.config import Settings, get_settings
from ..core.errors import (
    BeliefConflictError,
    BeliefNotFoundError,
    StoreRejectedError,
    StoreUnavailableError,
)
from ..core.logging import get_logger
from ..fetchers.base_fetcher import parse_retry_after
from ..models.belief import BeliefSnapshot, CorrectionEvent
from ..models.envelope import DocumentEnvelope
from ..models.source import TenantContext

logger = get_logger(__name__)


class MemoryClient:
    """Submit envelopes and corrections to the memory store.

    The client does not deduplicate; callers gate ``ingest`` with the
    idempotency ledger. The ``Idempotency-Key`` header lets a store that
    supports it absorb the rare replay after a crash.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.client = client
        self.base_url = self.settings.memory_base_url.rstrip("/")
        self.timeout = self.settings.ingest_timeout

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.settings.memory_api_key is not None:
            headers["Authorization"] = f"Bearer {self.settings.memory_api_key.get_secret_value()}"
        if extra:
            headers.update(extra)
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            response = await self.client.request(
                method,
                url,
                json=json,
                headers=self._headers(headers),
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise StoreUnavailableError(f"Memory store timed out on {method} {path}") from e
        except httpx.TransportError as e:
            raise StoreUnavailableError(f"Memory store unreachable on {method} {path}: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise StoreUnavailableError(
                f"Memory store answered {response.status_code} on {method} {path}",
                retry_after=parse_retry_after(response.headers.get("retry-after")),
            )
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError as e:
            raise StoreUnavailableError(f"Non-JSON answer from memory store ({response.status_code})") from e
        return body if isinstance(body, dict) else {"data": body}

    async def ingest(self, envelope: DocumentEnvelope, tenant: Optional[TenantContext] = None) -> str:
        """Submit one envelope and return the store's effect id."""
        body: Dict[str, Any] = {"document": envelope.model_dump(mode="json")}
        if tenant is not None:
            body["tenant_id"] = tenant.tenant_id
            body["user_id"] = tenant.user_id

        response = await self._request(
            "POST",
            "/documents",
            json=body,
            headers={"Idempotency-Key": envelope.idempotency_key},
        )
        if response.status_code >= 400:
            raise StoreRejectedError(
                f"Memory store rejected {envelope.idempotency_key}: "
                f"{response.status_code} {response.text[:200]}"
            )

        payload = self._json(response)
        effect_id = payload.get("id") or payload.get("document_id") or envelope.idempotency_key
        logger.info(
            "Ingested document",
            source_kind=envelope.source_kind.value,
            source_id=envelope.source_id,
            effect_id=effect_id,
        )
        return str(effect_id)

    async def query(
        self,
        query: str,
        filters: Optional[Dict[str, Any]] = None,
        tenant: Optional[TenantContext] = None,
        limit: int = 10,
    ) -> Dict[str, Any]:
        """Ask the memory store for memories matching ``query``."""
        body: Dict[str, Any] = {"query": query, "filters": filters or {}, "limit": limit}
        if tenant is not None:
            body["tenant_id"] = tenant.tenant_id

        response = await self._request("POST", "/memories/query", json=body)
        if response.status_code >= 400:
            raise StoreRejectedError(f"Memory query rejected: {response.status_code} {response.text[:200]}")
        return self._json(response)

    async def get_belief(self, belief_id: str) -> BeliefSnapshot:
        response = await self._request("GET", f"/beliefs/{belief_id}")
        if response.status_code == 404:
            raise BeliefNotFoundError(f"Belief {belief_id} not found")
        if response.status_code >= 400:
            raise StoreRejectedError(f"Belief lookup rejected: {response.status_code} {response.text[:200]}")

        payload = self._json(response)
        try:
            return BeliefSnapshot(
                belief_id=str(payload.get("id") or belief_id),
                state=payload.get("state"),
                content=payload.get("content"),
                superseded_by=payload.get("superseded_by"),
            )
        except ValidationError as e:
            raise StoreRejectedError(f"Unexpected belief shape for {belief_id}: {e}") from e

    async def update(self, event: CorrectionEvent) -> Dict[str, Any]:
        """Apply one correction. Exactly one store call per event."""
        response = await self._request(
            "POST",
            f"/beliefs/{event.belief_id}/corrections",
            json=event.model_dump(mode="json"),
        )
        if response.status_code == 404:
            raise BeliefNotFoundError(f"Belief {event.belief_id} not found")
        if response.status_code == 409:
            detail = self._json(response)
            raise BeliefConflictError(
                f"Memory store refused {event.action.value} on {event.belief_id}: "
                f"{detail.get('detail') or detail.get('error') or 'conflict'}",
                superseded_by=detail.get("superseded_by"),
            )
        if response.status_code >= 400:
            raise StoreRejectedError(
                f"Correction rejected: {response.status_code} {response.text[:200]}"
            )
        return self._json(response)
