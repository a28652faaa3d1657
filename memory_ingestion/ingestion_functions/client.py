"""Inngest client configuration."""

import logging

import inngest

from ..core.config import get_settings

_settings = get_settings()

inngest_client = inngest.Inngest(
    app_id=_settings.inngest_app_id,
    is_production=_settings.inngest_is_production,
    logger=logging.getLogger("inngest"),
)
