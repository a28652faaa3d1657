"""Fetchers for each activity source kind."""

from typing import Dict, Optional

import httpx

from ..core.config import Settings
from ..models.source import SourceKind
from .base_fetcher import BaseFetcher, raise_for_source_status
from .chat_fetcher import ChatFetcher
from .email_fetcher import EmailFetcher
from .calendar_fetcher import CalendarFetcher
from .note_fetcher import NoteFetcher
from .subscription_client import SubscriptionClient

__all__ = [
    'BaseFetcher',
    'ChatFetcher',
    'EmailFetcher',
    'CalendarFetcher',
    'NoteFetcher',
    'SubscriptionClient',
    'FETCHER_REGISTRY',
    'build_fetchers',
    'raise_for_source_status',
]

# Fetcher registry mapping source kinds to fetcher classes
FETCHER_REGISTRY = {
    SourceKind.CHAT: ChatFetcher,
    SourceKind.EMAIL: EmailFetcher,
    SourceKind.CALENDAR: CalendarFetcher,
    SourceKind.NOTE: NoteFetcher,
}


def build_fetchers(client: httpx.AsyncClient, settings: Settings) -> Dict[SourceKind, BaseFetcher]:
    """Instantiate one fetcher per source kind sharing ``client``."""
    token: Optional[str] = (
        settings.source_access_token.get_secret_value() if settings.source_access_token else None
    )
    base_urls = {
        SourceKind.CHAT: settings.graph_base_url,
        SourceKind.EMAIL: settings.graph_base_url,
        SourceKind.CALENDAR: settings.graph_base_url,
        SourceKind.NOTE: settings.notes_base_url,
    }
    return {
        kind: fetcher_class(
            client,
            base_url=base_urls[kind],
            access_token=token,
            timeout=settings.fetch_timeout,
        )
        for kind, fetcher_class in FETCHER_REGISTRY.items()
    }
