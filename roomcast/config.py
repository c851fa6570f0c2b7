"""Application configuration using Pydantic Settings."""

from functools import lru_cache
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite:///./roomcast.db"

    # Secrets
    CRON_SECRET: str = ""  # Bearer secret for /api/sync/cron (empty = endpoint disabled)
    ENCRYPTION_SECRET: str = ""  # Key material for provider credentials

    # API Security
    API_KEY: str = ""  # Optional API key for admin endpoints
    API_KEY_HEADER: str = "X-API-Key"
    METRICS_BEARER_TOKEN: str = ""  # Optional Bearer token for /metrics

    # ═══════════════════════════════════════════════════════════════
    # Calendar sync
    # ═══════════════════════════════════════════════════════════════
    SYNC_INTERVAL_SECONDS: int = 30  # Worker loop cadence
    SYNC_BATCH_SIZE: int = 10  # Max calendars per dispatch cycle
    SYNC_STALE_AFTER_SECONDS: int = 300  # SYNCING older than this is abandoned
    SYNC_WORKER_ENABLED: bool = False  # Run the dispatch loop inside the web process

    # ═══════════════════════════════════════════════════════════════
    # Display push (SSE)
    # ═══════════════════════════════════════════════════════════════
    SSE_HEARTBEAT_SECONDS: float = 30.0
    SSE_MAX_PENDING_FRAMES: int = 100  # Per-connection buffer before it is considered dead
    DISPLAY_EVENTS_DAYS: int = 7  # Window of events sent in the init envelope
    DISPLAY_POLL_RATE_LIMIT: str = "60/minute"

    # Logging
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
