from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseSettings):
    port: int = 8000
    log_level: str = "INFO"

    # "local" shares a file-backed keyspace between processes on one host,
    # "redis" is for multi-host deployments.
    store_backend: str = "local"
    redis_url: str = "redis://localhost:6379/0"
    local_store_filename: str = "dispatch"

    idle_ttl_sec: float = 90.0
    pending_ttl_sec: float = 10.0
    request_ttl_sec: float = 86400.0

    # Must be longer than signal_api_timeout_sec, which caps a whole grant call.
    processing_lock_ttl_sec: float = 10.0
    lock_retry_count: int = 3
    lock_retry_delay_sec: float = 0.2
    lock_retry_jitter_sec: float = 0.2

    update_grace_sec: float = 2.0
    scheduler_interval_sec: float = 1.0
    update_interval_sec: float = 3.0
    orphan_evict_after: int = 5

    signal_api_token: Optional[str] = None
    signal_api_timeout_sec: float = 5.0

    run_loops: bool = True

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @model_validator(mode="after")
    def lock_outlives_grant(self):
        if self.processing_lock_ttl_sec <= self.signal_api_timeout_sec:
            raise ValueError(
                f"processing_lock_ttl_sec ({self.processing_lock_ttl_sec}) must exceed "
                f"signal_api_timeout_sec ({self.signal_api_timeout_sec})"
            )
        return self


settings = AppConfig()
