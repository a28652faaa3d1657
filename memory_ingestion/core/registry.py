"""Source registry holding the enablement record for every (kind, tenant)."""

import asyncio
import contextlib
import fcntl
import os
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

import aiofiles
import yaml
from pydantic import ValidationError

from ..models.source import SourceConfig, SourceKind, source_key
from .config import Settings, get_settings
from .logging import get_logger
from .storage import utc_now

logger = get_logger(__name__)


class SourceRegistry:
    """Registry of source enablement, backed by a YAML file.

    Several processes share the file (the API server, workers, the CLI). Reads
    re-load it whenever it changed on disk, and every write is a
    read-modify-write under an exclusive file lock followed by an atomic
    replace, so one process never overwrites another's change.
    """

    def __init__(self, settings: Optional[Settings] = None, sources_file: Optional[Path] = None):
        self.settings = settings or get_settings()
        self.sources_file = Path(sources_file or self.settings.sources_path)
        self._sources: Dict[str, SourceConfig] = {}
        self._signature: Optional[Tuple[int, int, int]] = None
        self._write_lock = asyncio.Lock()
        self._load_sources()

    @property
    def _lock_file(self) -> Path:
        return self.sources_file.with_name(self.sources_file.name + ".lock")

    def _file_signature(self) -> Optional[Tuple[int, int, int]]:
        try:
            stat = os.stat(self.sources_file)
        except FileNotFoundError:
            return None
        return (stat.st_ino, stat.st_mtime_ns, stat.st_size)

    def _load_sources(self) -> None:
        """Load source configurations from the YAML file."""
        signature = self._file_signature()
        if signature is None:
            if self._signature is None:
                logger.warning(
                    "Sources file not found, starting with empty registry",
                    sources_file=str(self.sources_file),
                )
            self._sources = {}
            self._signature = None
            return

        with open(self.sources_file, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        sources: Dict[str, SourceConfig] = {}
        for entry in data.get("sources", []):
            try:
                config = SourceConfig(**entry)
            except ValidationError as e:
                logger.error("Invalid source entry skipped", entry=entry, error=str(e))
                continue
            sources[config.key] = config

        self._sources = sources
        self._signature = signature
        logger.info(
            "Loaded source registry",
            sources_file=str(self.sources_file),
            total=len(sources),
            enabled=len([s for s in sources.values() if s.enabled]),
        )

    def _refresh(self) -> None:
        """Re-load the file if another process changed it."""
        if self._file_signature() != self._signature:
            self._load_sources()

    @contextlib.contextmanager
    def _locked_file(self) -> Iterator[None]:
        self._lock_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self._lock_file, "a") as handle:
            fcntl.flock(handle, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle, fcntl.LOCK_UN)

    async def _save_sources(self) -> None:
        """Persist the registry back to its YAML file."""
        data = {
            "sources": [
                config.model_dump(mode="json", exclude_none=True)
                for config in self._sources.values()
            ]
        }
        self.sources_file.parent.mkdir(parents=True, exist_ok=True)
        staging = self.sources_file.with_name(f".{self.sources_file.name}.{os.getpid()}.tmp")
        async with aiofiles.open(staging, "w", encoding="utf-8") as f:
            await f.write(yaml.safe_dump(data, default_flow_style=False, sort_keys=False))
        os.replace(staging, self.sources_file)
        self._signature = self._file_signature()

    async def _update(self, config: SourceConfig) -> None:
        self._sources[config.key] = config
        await self._save_sources()

    def get(self, source_kind: SourceKind, tenant_id: str) -> Optional[SourceConfig]:
        """Get the record for a (kind, tenant) pair."""
        self._refresh()
        return self._sources.get(source_key(source_kind, tenant_id))

    def is_enabled(self, source_kind: SourceKind, tenant_id: str) -> bool:
        config = self.get(source_kind, tenant_id)
        return bool(config and config.enabled)

    def list_sources(self, enabled_only: bool = False) -> List[SourceConfig]:
        """List all source records."""
        self._refresh()
        sources = list(self._sources.values())
        if enabled_only:
            sources = [s for s in sources if s.enabled]
        return sources

    async def enable(
        self,
        source_kind: SourceKind,
        tenant_id: str,
        user_id: Optional[str] = None,
    ) -> SourceConfig:
        """Mark a source enabled, creating its record if needed."""
        async with self._write_lock:
            with self._locked_file():
                self._load_sources()
                existing = self._sources.get(source_key(source_kind, tenant_id))
                user_id = user_id or (existing.user_id if existing else None)
                if not user_id:
                    raise ValueError(f"user_id is required to enable {source_key(source_kind, tenant_id)}")

                config = SourceConfig(
                    source_kind=source_kind,
                    tenant_id=tenant_id,
                    user_id=user_id,
                    enabled=True,
                    enabled_at=utc_now(),
                )
                await self._update(config)

        logger.info("Enabled source", source=config.key)
        return config

    async def disable(self, source_kind: SourceKind, tenant_id: str) -> Optional[SourceConfig]:
        """Mark a source disabled; queued work is left to drain."""
        async with self._write_lock:
            with self._locked_file():
                self._load_sources()
                existing = self._sources.get(source_key(source_kind, tenant_id))
                if existing is None:
                    return None

                config = existing.model_copy(update={"enabled": False, "disabled_at": utc_now()})
                await self._update(config)

        logger.info("Disabled source", source=config.key)
        return config
