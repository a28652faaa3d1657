"""Exactly-once activity ingestion and belief correction for a memory store."""

__version__ = "0.1.0"
