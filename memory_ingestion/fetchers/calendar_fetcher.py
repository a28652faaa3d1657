"""Calendar event fetcher."""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from urllib.parse import quote

from ..core.storage import utc_now
from ..models.source import SourceKind, TenantContext
from .graph_fetcher import GraphFetcher, graph_time

# calendarView delta needs a closed window; look this far ahead.
LOOKAHEAD = timedelta(days=365)
DEFAULT_LOOKBACK = timedelta(days=30)


class CalendarFetcher(GraphFetcher):
    """Fetcher for events on the user's calendar."""

    source_kind = SourceKind.CALENDAR

    async def fetch_by_id(self, resource_id: str, tenant: TenantContext) -> Dict[str, Any]:
        user = quote(tenant.user_id, safe="@.")
        return await self._get_json(f"/users/{user}/events/{quote(resource_id, safe='')}")

    def delta_path(self, tenant: TenantContext) -> str:
        return f"/users/{quote(tenant.user_id, safe='@.')}/calendarView/delta"

    def initial_delta_params(self, since: Optional[datetime]) -> Dict[str, str]:
        now = utc_now()
        start = since or now - DEFAULT_LOOKBACK
        return {
            "startDateTime": graph_time(start),
            "endDateTime": graph_time(now + LOOKAHEAD),
        }

    def delta_resource_id(self, item: Dict[str, Any]) -> Optional[str]:
        return item.get("id")

    def subscription_resource(self, tenant: TenantContext) -> str:
        return f"/users/{tenant.user_id}/events"
