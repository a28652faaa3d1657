"""Core services for the ingestion engine."""

from .config import Settings, get_settings
from .logging import setup_logging, get_logger
from .storage import Database

__all__ = [
    "Settings",
    "get_settings",
    "setup_logging",
    "get_logger",
    "Database",
]
