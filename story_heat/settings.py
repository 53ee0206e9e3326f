from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: str
    redis_url: str | None = None

    # Store boundary
    db_pool_enabled: bool = False
    db_pool_min_size: int = 1
    db_pool_max_size: int = 10
    db_pool_timeout_seconds: float = 10.0
    statement_timeout_ms: int = 5000  # 0 = no timeout

    # Apply pending migrations when the API starts
    auto_migrate: bool = False

    # Heat engine
    decay_config_ttl_seconds: float = 300.0
    hot_cluster_cache_ttl_seconds: int = 60

    # Structured logging
    log_format: str = "json"  # "json" or "text"
    log_level: str = "INFO"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


def clear_settings_cache() -> None:
    get_settings.cache_clear()
