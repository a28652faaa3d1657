"""HTTP routes for the ingestion service."""

from .corrections import router as corrections_router
from .dead_letters import router as dead_letters_router
from .health import router as health_router
from .memory import router as memory_router
from .sources import router as sources_router
from .webhooks import router as webhooks_router

__all__ = [
    "corrections_router",
    "dead_letters_router",
    "health_router",
    "memory_router",
    "sources_router",
    "webhooks_router",
]
