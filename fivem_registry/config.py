"""Runtime configuration loaded from the environment."""

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

SERVER_LIST_URL = "https://servers-frontend.fivem.net/api/servers/streamRedir/"
SERVER_LOOKUP_URL = "https://servers-frontend.fivem.net/api/servers/single/{server_id}"


class Settings(BaseSettings):
    """Pipeline and HTTP service settings.

    Every field can be overridden with an environment variable prefixed
    with ``FIVEM_`` (e.g. ``FIVEM_REDIS_URL``).
    """

    # Store
    store_backend: Literal["redis", "memory"] = "redis"
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = "fivem:"

    # Task queue
    address_freshness_hours: float = 24.0
    lease_seconds: float = 60.0
    address_batch_size: int = 30
    scan_batch_size: int = 200
    max_address_attempts: int = 5
    address_priority_ratio: float = 0.9

    # Fetcher
    lookup_timeout: float = 10.0
    lookup_concurrency: int = 10
    lookup_sub_batch_delay: float = 0.5
    backoff_min: float = 5.0
    backoff_max: float = 60.0
    backoff_decay: float = 0.8

    # Scanner
    probe_timeout: float = 4.0
    scan_concurrency: int = 150

    # Aggregation
    top_k: int = 100
    flush_batch: int = 500
    flush_max_delay: float = 5.0
    cache_ttl: float = 60.0

    # Scheduler
    sync_interval: float = 600.0
    scan_refresh_interval: float = 3600.0
    idle_interval: float = 5.0
    run_background: bool = True

    # Streaming
    stream_stats_interval: float = 2.0
    stream_resources_interval: float = 10.0

    # Upstream
    server_list_url: str = SERVER_LIST_URL
    server_lookup_url: str = SERVER_LOOKUP_URL
    user_agent: str = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"

    # App
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000

    model_config = SettingsConfigDict(
        env_prefix="FIVEM_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @property
    def freshness_seconds(self) -> float:
        return self.address_freshness_hours * 3600
