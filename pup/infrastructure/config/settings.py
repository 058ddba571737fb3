"""Configuration settings for the pup service."""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment (PUP_ prefix) or .env"""

    model_config = SettingsConfigDict(
        env_prefix="PUP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Service
    service_name: str = "pup"
    environment: str = "development"
    service_version: str = "0.1.0"
    log_level: str = "INFO"
    log_format: str = "json"
    bot_user_id: str = ""

    # OpenAI
    openai_api_key: Optional[str] = None
    chat_model: str = "gpt-4o-mini"
    response_model: str = "gpt-4o"
    embedding_model: str = "text-embedding-3-small"
    embedding_dimension: int = 1536
    response_max_tokens: int = 500

    # Datastores; unset selects the in-process implementations
    redis_url: Optional[str] = None
    database_url: Optional[str] = None

    # Memory store
    memory_retention_days: int = 180
    cleanup_interval_seconds: int = 3600

    # Cache and buffer
    cache_ttl_seconds: int = 3600
    buffer_capacity: int = 100
    buffer_ttl_seconds: int = 86400
    dedup_ttl_seconds: int = 600

    # Resilience
    max_retries: int = 3
    backoff_base_ms: int = 1000
    backoff_cap_ms: int = 10000
    breaker_failure_threshold: int = 5
    breaker_reset_seconds: int = 60


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
