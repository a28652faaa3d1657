"""Base fetcher and HTTP error mapping shared by every source kind."""

from abc import ABC, abstractmethod
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Optional

import httpx

from ..core.errors import (
    AuthorizationRevokedError,
    CursorInvalidatedError,
    ItemGoneError,
    PermanentError,
    RateLimitedError,
    TransientSourceError,
)
from ..core.logging import get_logger
from ..core.storage import utc_now
from ..models.cursor import DeltaPage
from ..models.source import SourceKind, TenantContext

logger = get_logger(__name__)

# Error codes platforms use to say a delta token can no longer be resumed.
CURSOR_INVALID_CODES = frozenset(
    {"syncstatenotfound", "resyncrequired", "syncstateinvalid", "cursorexpired"}
)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given either as seconds or as an HTTP date."""
    if not value:
        return None

    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.warning("Unparseable Retry-After header", retry_after=value)
        return None
    return max(0.0, (when - utc_now()).total_seconds())


def error_code(response: httpx.Response) -> str:
    """Extract the platform error code from a JSON error body, if any."""
    try:
        body = response.json()
    except ValueError:
        return ""
    if not isinstance(body, dict):
        return ""
    error = body.get("error")
    if isinstance(error, dict):
        return str(error.get("code") or "")
    if isinstance(error, str):
        return error
    return str(body.get("code") or "")


def raise_for_source_status(response: httpx.Response, resource: str, delta: bool = False) -> None:
    """Translate a source platform response into the pipeline's error taxonomy."""
    status = response.status_code
    if status < 400:
        return

    code = error_code(response)
    detail = f"{status} {code}".strip()

    if status == 429:
        raise RateLimitedError(
            f"Rate limited while fetching {resource}",
            retry_after=parse_retry_after(response.headers.get("retry-after")),
        )
    if status >= 500:
        raise TransientSourceError(
            f"Source error {detail} for {resource}",
            retry_after=parse_retry_after(response.headers.get("retry-after")),
        )
    if delta and (status == 410 or code.lower() in CURSOR_INVALID_CODES):
        raise CursorInvalidatedError(f"Delta cursor invalidated ({detail}) for {resource}")
    if status in (404, 410):
        raise ItemGoneError(f"{resource} no longer exists ({detail})")
    if status in (401, 403):
        raise AuthorizationRevokedError(f"Access to {resource} denied ({detail})")
    raise PermanentError(f"Source rejected request for {resource} ({detail})")


class BaseFetcher(ABC):
    """Base class for source fetchers.

    Fetchers hold configuration only; the HTTP client is shared and injected,
    so one fetcher instance can serve every tenant concurrently.
    """

    source_kind: SourceKind

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        access_token: Optional[str] = None,
        timeout: float = 10.0,
    ):
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.timeout = timeout

    @abstractmethod
    async def fetch_by_id(self, resource_id: str, tenant: TenantContext) -> Dict[str, Any]:
        """Fetch one raw item."""

    @abstractmethod
    async def delta_query(
        self,
        tenant: TenantContext,
        cursor: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> DeltaPage:
        """Fetch one page of changes after ``cursor`` (or since ``since`` when starting fresh)."""

    @abstractmethod
    def subscription_resource(self, tenant: TenantContext) -> str:
        """Resource path push subscriptions are created for."""

    @property
    def subscriptions_url(self) -> str:
        return f"{self.base_url}/subscriptions"

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    def _url(self, path_or_url: str) -> str:
        if path_or_url.startswith(("http://", "https://")):
            return path_or_url
        return f"{self.base_url}/{path_or_url.lstrip('/')}"

    async def _get_json(
        self,
        path_or_url: str,
        params: Optional[Dict[str, str]] = None,
        delta: bool = False,
    ) -> Dict[str, Any]:
        """GET a JSON document, mapping failures onto pipeline errors."""
        url = self._url(path_or_url)

        try:
            response = await self.client.get(
                url,
                params=params,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise TransientSourceError(f"Timed out fetching {url}: {e}") from e
        except httpx.TransportError as e:
            raise TransientSourceError(f"Transport error fetching {url}: {e}") from e

        raise_for_source_status(response, resource=url, delta=delta)

        try:
            body = response.json()
        except ValueError as e:
            raise TransientSourceError(f"Non-JSON response from {url}") from e

        if not isinstance(body, dict):
            raise PermanentError(f"Unexpected response shape from {url}")
        return body
