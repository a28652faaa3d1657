"""Manual note fetcher for the notes service."""

from datetime import datetime
from typing import Any, Dict, Optional
from urllib.parse import quote

from ..models.cursor import DeltaItem, DeltaPage
from ..models.source import SourceKind, TenantContext
from .base_fetcher import BaseFetcher


class NoteFetcher(BaseFetcher):
    """Fetcher for notes people write by hand.

    The notes service pages changes as
    ``{"items": [{"id", "deleted"}], "next_cursor", "has_more"}`` and answers
    410 when a cursor has aged out.
    """

    source_kind = SourceKind.NOTE

    def _tenant_path(self, tenant: TenantContext) -> str:
        return f"/tenants/{quote(tenant.tenant_id, safe='')}"

    async def fetch_by_id(self, resource_id: str, tenant: TenantContext) -> Dict[str, Any]:
        return await self._get_json(
            f"{self._tenant_path(tenant)}/notes/{quote(resource_id, safe='')}"
        )

    async def delta_query(
        self,
        tenant: TenantContext,
        cursor: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> DeltaPage:
        params: Dict[str, str] = {}
        if cursor:
            params["cursor"] = cursor
        elif since is not None:
            params["since"] = since.isoformat()

        body = await self._get_json(
            f"{self._tenant_path(tenant)}/notes/changes",
            params=params,
            delta=True,
        )

        items = [
            DeltaItem(
                resource_id=str(raw["id"]),
                change_type="deleted" if raw.get("deleted") else "updated",
                removed=bool(raw.get("deleted")),
            )
            for raw in body.get("items", [])
            if raw.get("id")
        ]
        return DeltaPage(
            items=items,
            next_cursor=body.get("next_cursor"),
            has_more=bool(body.get("has_more")),
        )

    def subscription_resource(self, tenant: TenantContext) -> str:
        return f"{self._tenant_path(tenant)}/notes"
