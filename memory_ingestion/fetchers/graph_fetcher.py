"""Shared delta handling for Microsoft Graph backed sources."""

from abc import abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..core.logging import get_logger
from ..models.cursor import DeltaItem, DeltaPage
from ..models.source import TenantContext
from .base_fetcher import BaseFetcher

logger = get_logger(__name__)


def graph_time(value: datetime) -> str:
    """Format a datetime the way Graph query parameters expect."""
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


class GraphFetcher(BaseFetcher):
    """Fetcher for a Graph resource that supports ``/delta`` paging.

    Graph pages carry ``@odata.nextLink`` while more pages remain and
    ``@odata.deltaLink`` on the last page; either link is the next cursor.
    """

    @abstractmethod
    def delta_path(self, tenant: TenantContext) -> str:
        """Path of the delta function for this resource."""

    @abstractmethod
    def delta_resource_id(self, item: Dict[str, Any]) -> Optional[str]:
        """Resource id a delta item maps to (the same id ``fetch_by_id`` takes)."""

    def initial_delta_params(self, since: Optional[datetime]) -> Dict[str, str]:
        """Query parameters for a delta round that starts without a cursor."""
        return {}

    async def delta_query(
        self,
        tenant: TenantContext,
        cursor: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> DeltaPage:
        if cursor:
            body = await self._get_json(cursor, delta=True)
        else:
            body = await self._get_json(
                self.delta_path(tenant),
                params=self.initial_delta_params(since),
                delta=True,
            )
        return self._parse_delta_page(body)

    def _parse_delta_page(self, body: Dict[str, Any]) -> DeltaPage:
        items: List[DeltaItem] = []
        for raw in body.get("value", []):
            resource_id = self.delta_resource_id(raw)
            if not resource_id:
                logger.warning(
                    "Delta item without usable id skipped",
                    source_kind=self.source_kind.value,
                )
                continue
            removed = "@removed" in raw
            items.append(
                DeltaItem(
                    resource_id=resource_id,
                    change_type="deleted" if removed else "updated",
                    removed=removed,
                )
            )

        next_link = body.get("@odata.nextLink")
        delta_link = body.get("@odata.deltaLink")
        return DeltaPage(
            items=items,
            next_cursor=next_link or delta_link,
            has_more=bool(next_link),
        )
