from pydantic import field_validator
from pydantic_settings import BaseSettings
from typing import Dict, List

from phimcache.core.exceptions import ConfigurationError


class Settings(BaseSettings):
    PROJECT_NAME: str = "Phim Cache"
    VERSION: str = "1.0.0"
    API_V1_STR: str = "/api/v1"
    LOG_LEVEL: str = "INFO"

    # Database (durable store + durable cache tier)
    DATABASE_URL: str = "sqlite:///./phimcache.db"

    # Redis / Celery
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_CACHE_ENABLED: bool = True
    TIMEZONE: str = "Asia/Ho_Chi_Minh"

    # Upstream provider
    UPSTREAM_BASE_URL: str = "https://api.dulieuphim.ink"
    UPSTREAM_TIMEOUT: float = 30.0
    UPSTREAM_MAX_CONCURRENCY: int = 5
    UPSTREAM_VERSIONS: Dict[str, List[str]] = {}

    # Image enrichment
    IMAGE_TIMEOUT: float = 10.0
    ENRICH_BATCH_SIZE: int = 5
    ENRICH_BATCH_DEADLINE: float = 5.0
    PLACEHOLDER_IMAGE: str = "/placeholder.svg?height=450&width=300"

    # Stream probing
    PROBE_TIMEOUT: float = 5.0
    PROBE_CONCURRENCY: int = 5

    # Cache TTLs (seconds)
    CACHE_MEMORY_TTL: int = 300
    CACHE_DISTRIBUTED_TTL: int = 1800
    CACHE_DURABLE_TTL: int = 86400
    CACHE_DURABLE_WRITE_BEHIND: bool = False

    # Recurring episode sync
    SYNC_ENABLED: bool = True
    SYNC_INTERVAL: float = 6 * 3600
    SYNC_STARTUP_DELAY: float = 5 * 60
    SYNC_INTER_MOVIE_DELAY: float = 1.0
    SYNC_RECENT_COUNT: int = 20

    @field_validator("UPSTREAM_BASE_URL")
    @classmethod
    def _require_base_url(cls, value: str) -> str:
        value = (value or "").strip().rstrip("/")
        if not value:
            raise ConfigurationError("UPSTREAM_BASE_URL must be set")
        if not value.startswith(("http://", "https://")):
            raise ConfigurationError(f"UPSTREAM_BASE_URL must be an http(s) address, got {value!r}")
        return value

    @field_validator("UPSTREAM_MAX_CONCURRENCY", "ENRICH_BATCH_SIZE", "PROBE_CONCURRENCY")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ConfigurationError("concurrency and batch sizes must be at least 1")
        return value

    class Config:
        env_file = ".env"


settings = Settings()
