"""Outlook mail fetcher."""

from datetime import datetime
from typing import Any, Dict, Optional
from urllib.parse import quote

from ..models.source import SourceKind, TenantContext
from .graph_fetcher import GraphFetcher, graph_time


class EmailFetcher(GraphFetcher):
    """Fetcher for messages in the user's mailbox."""

    source_kind = SourceKind.EMAIL

    async def fetch_by_id(self, resource_id: str, tenant: TenantContext) -> Dict[str, Any]:
        user = quote(tenant.user_id, safe="@.")
        return await self._get_json(f"/users/{user}/messages/{quote(resource_id, safe='')}")

    def delta_path(self, tenant: TenantContext) -> str:
        return f"/users/{quote(tenant.user_id, safe='@.')}/mailFolders/inbox/messages/delta"

    def initial_delta_params(self, since: Optional[datetime]) -> Dict[str, str]:
        if since is None:
            return {}
        return {"$filter": f"receivedDateTime ge {graph_time(since)}"}

    def delta_resource_id(self, item: Dict[str, Any]) -> Optional[str]:
        return item.get("id")

    def subscription_resource(self, tenant: TenantContext) -> str:
        return f"/users/{tenant.user_id}/messages"
