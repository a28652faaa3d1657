"""Configuration management for the ingestion service."""

from pathlib import Path
from typing import Optional
from functools import lru_cache

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Logging Configuration
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")
    log_file: Optional[Path] = Field(default=None)

    # Directory Configuration
    base_dir: Path = Field(default_factory=Path.cwd)
    data_dir: Path = Field(default=Path("data"))
    sources_file: Path = Field(default=Path("registry/sources.yaml"))

    # Outbound call timeouts (seconds)
    fetch_timeout: float = Field(default=10.0, gt=0)
    ingest_timeout: float = Field(default=10.0, gt=0)
    subscription_timeout: float = Field(default=10.0, gt=0)

    # Worker pool
    max_concurrent_jobs: int = Field(default=5, ge=1)
    worker_poll_interval: float = Field(default=1.0, gt=0)
    job_lease_seconds: int = Field(default=300, ge=1)

    # Retry policy
    max_job_attempts: int = Field(default=5, ge=0)
    retry_base_delay: float = Field(default=2.0, ge=0)
    retry_max_delay: float = Field(default=900.0, ge=0)
    retry_jitter: float = Field(default=1.0, ge=0)

    # Idempotency ledger
    idempotency_retention_days: int = Field(default=30, ge=1)
    reservation_ttl_seconds: int = Field(default=120, ge=1)

    # Webhook gateway
    webhook_secret: SecretStr = Field(default=SecretStr("dev-webhook-secret"))
    gateway_enqueue_timeout: float = Field(default=0.5, gt=0)
    public_base_url: str = Field(default="http://localhost:8000")

    # Delta reconciliation
    reconcile_interval_minutes: int = Field(default=15, ge=1)
    initial_backfill_days: int = Field(default=30, ge=0)
    rebackfill_days: int = Field(default=7, ge=0)
    reconcile_lock_seconds: int = Field(default=600, ge=1)

    # Subscriptions
    subscription_lifetime_minutes: int = Field(default=4230, ge=1)
    renewal_lead_minutes: int = Field(default=60, ge=0)
    max_renewal_attempts: int = Field(default=5, ge=1)
    renewal_backoff_base: float = Field(default=2.0, ge=0)
    renewal_backoff_max: float = Field(default=60.0, ge=0)
    renewal_stale_minutes: int = Field(default=15, ge=1)

    # Source platforms
    graph_base_url: str = Field(default="https://graph.microsoft.com/v1.0")
    notes_base_url: str = Field(default="http://localhost:8100")
    source_access_token: Optional[SecretStr] = Field(default=None)

    # Memory store
    memory_base_url: str = Field(default="http://localhost:8200")
    memory_api_key: Optional[SecretStr] = Field(default=None)

    # Inngest Configuration
    inngest_app_id: str = Field(default="memory-ingestion")
    inngest_is_production: bool = Field(default=False)
    reconcile_cron: str = Field(default="*/15 * * * *")
    renewal_cron: str = Field(default="*/10 * * * *")
    drain_cron: str = Field(default="* * * * *")
    ledger_purge_cron: str = Field(default="0 3 * * *")

    # API Configuration
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000)
    api_reload: bool = Field(default=False)

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._setup_directories()

    def _setup_directories(self) -> None:
        """Create data directories if they don't exist."""
        directories = [self.data_path, self.sources_path.parent]
        if self.log_file is not None:
            directories.append(self.log_path.parent)

        for directory in directories:
            directory.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: Path) -> Path:
        if path.is_absolute():
            return path
        return self.base_dir / path

    @property
    def data_path(self) -> Path:
        """Get absolute path to the data directory."""
        return self._resolve(self.data_dir)

    @property
    def database_path(self) -> Path:
        """Get absolute path to the SQLite database."""
        return self.data_path / "ingestion.db"

    @property
    def sources_path(self) -> Path:
        """Get absolute path to the source registry file."""
        return self._resolve(self.sources_file)

    @property
    def log_path(self) -> Optional[Path]:
        """Get absolute path to the log file, if file logging is enabled."""
        if self.log_file is None:
            return None
        return self._resolve(self.log_file)

    @property
    def webhook_url(self) -> str:
        """Notification URL handed to source platforms."""
        return f"{self.public_base_url.rstrip('/')}/webhooks/notifications"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
