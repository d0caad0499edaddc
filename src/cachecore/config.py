from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CACHECORE_", env_file=".env", extra="ignore")

    app_name: str = "cachecore"
    env: str = "dev"

    # Store
    redis_url: str = Field(default="redis://localhost:6379/0", validation_alias="REDIS_URL")
    key_prefix: str = "cc"

    # Strategy engine
    default_ttl: int = Field(default=3600, ge=0)
    single_flight: bool = False

    # Write-behind queue
    write_behind_queue_size: int = Field(default=10000, gt=0)
    write_behind_workers: int = Field(default=4, gt=0)
    write_behind_max_retries: int = Field(default=5, gt=0)
    write_behind_put_timeout: float = Field(default=1.0, ge=0)
    retry_base_delay: float = Field(default=0.5, ge=0)
    retry_max_delay: float = Field(default=30.0, ge=0)

    # Invalidation
    invalidation_max_depth: int = Field(default=32, gt=0)

    # Rate limiting
    rate_limit_algorithm: str = "fixed_window"  # fixed_window or sliding_window
    rate_limit_fail_open: bool = True

    # Sessions
    session_ttl: int = Field(default=1800, gt=0)

    # Observability
    enable_metrics: bool = True
    log_level: str = "INFO"
    log_json: bool = True


settings = Settings()
