"""Request dependencies shared by the routers."""

from fastapi import Request

from ..services.container import IngestionServices


def get_ingestion_services(request: Request) -> IngestionServices:
    """Services instance attached to the app by ``create_app``."""
    return request.app.state.services
