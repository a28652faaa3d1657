"""Teams chat message fetcher."""

from typing import Any, Dict, Optional, Tuple
from urllib.parse import quote

from ..core.errors import EnvelopeValidationError
from ..models.source import SourceKind, TenantContext
from .graph_fetcher import GraphFetcher


def split_chat_resource_id(resource_id: str) -> Tuple[str, str]:
    """Split ``"{chatId}:{messageId}"``.

    Chat ids contain colons themselves (``19:abc@thread.v2``) but message ids
    never do, so the split is on the last colon.
    """
    chat_id, sep, message_id = resource_id.rpartition(":")
    if not sep or not chat_id or not message_id:
        raise EnvelopeValidationError(f"Malformed chat resource id: {resource_id!r}")
    return chat_id, message_id


def chat_resource_id(chat_id: str, message_id: str) -> str:
    return f"{chat_id}:{message_id}"


class ChatFetcher(GraphFetcher):
    """Fetcher for chat messages the user takes part in."""

    source_kind = SourceKind.CHAT

    async def fetch_by_id(self, resource_id: str, tenant: TenantContext) -> Dict[str, Any]:
        chat_id, message_id = split_chat_resource_id(resource_id)
        return await self._get_json(
            f"/chats/{quote(chat_id, safe=':@.')}/messages/{quote(message_id, safe='')}"
        )

    def delta_path(self, tenant: TenantContext) -> str:
        return f"/users/{quote(tenant.user_id, safe='@.')}/chats/getAllMessages/delta"

    def delta_resource_id(self, item: Dict[str, Any]) -> Optional[str]:
        chat_id = item.get("chatId")
        message_id = item.get("id")
        if not chat_id or not message_id:
            return None
        return chat_resource_id(chat_id, message_id)

    def subscription_resource(self, tenant: TenantContext) -> str:
        return f"/users/{tenant.user_id}/chats/getAllMessages"
