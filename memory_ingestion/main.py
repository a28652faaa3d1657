"""FastAPI application for the memory ingestion service."""

from contextlib import asynccontextmanager
from typing import Optional

import inngest.fast_api
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .api import (
    corrections_router,
    dead_letters_router,
    health_router,
    memory_router,
    sources_router,
    webhooks_router,
)
from .core.config import get_settings
from .core.logging import get_logger, setup_logging
from .ingestion_functions import inngest_client, inngest_functions
from .services.container import IngestionServices, get_services

logger = get_logger(__name__)


def create_app(services: Optional[IngestionServices] = None, serve_inngest: bool = True) -> FastAPI:
    """Build the application around ``services`` (the process-wide instance by default)."""
    settings = services.settings if services else get_settings()
    setup_logging(settings)
    services = services or get_services()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Memory ingestion API starting", version=__version__)
        yield
        await services.aclose()
        logger.info("Memory ingestion API stopped")

    app = FastAPI(
        title="Memory Ingestion API",
        description="Exactly-once ingestion of chat, email, calendar and note activity into memory",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router)
    app.include_router(webhooks_router)
    app.include_router(sources_router)
    app.include_router(dead_letters_router)
    app.include_router(corrections_router)
    app.include_router(memory_router)

    if serve_inngest:
        inngest.fast_api.serve(
            app=app,
            client=inngest_client,
            functions=inngest_functions,
        )

    return app


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "memory_ingestion.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_reload,
        log_level=settings.log_level.lower(),
    )
