"""Configuration management."""

from typing import Literal

from pydantic import BaseModel, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RateLimitConfig(BaseModel):
    """Fixed-window budget for one AI operation."""

    max_requests: int = 100
    window_minutes: int = 60


DAY = 24 * 60 * 60


class Settings(BaseSettings):
    """Application settings."""

    # Database (PostgreSQL) - constructed from parts
    db_host: str = "localhost"
    db_port: str = "5432"
    db_name: str = "chatsync"
    db_user: str = "chatsync"
    db_password: str = ""

    @computed_field
    @property
    def database_url(self) -> str:
        """Construct database URL from parts."""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    # Where local rows, cache entries and rate-limit counters live
    store_backend: Literal["memory", "postgres"] = "memory"

    # Language service
    language_service: Literal["claude", "mock"] = "claude"
    claude_model: str = "haiku"
    transcription_api_url: str = "https://api.openai.com/v1"
    transcription_api_key: str = ""
    transcription_model: str = "whisper-1"
    language_service_timeout_seconds: float = 30.0
    max_text_length: int = 10_000

    # Durable cache TTLs (seconds)
    translation_ttl_seconds: int = 30 * DAY
    language_detection_ttl_seconds: int = 30 * DAY
    cultural_context_ttl_seconds: int = 30 * DAY
    formality_ttl_seconds: int = 30 * DAY
    entity_extraction_ttl_seconds: int = 7 * DAY
    transcription_ttl_seconds: int = 30 * DAY
    smart_reply_ttl_seconds: int = 5 * 60

    # In-process cache tier
    memory_cache_ttl_seconds: int = 10 * 60
    memory_cache_max_entries: int = 500

    # Rate limits per operation
    rate_limits: dict[str, RateLimitConfig] = {
        "translation": RateLimitConfig(max_requests=100, window_minutes=60),
        "language_detection": RateLimitConfig(max_requests=100, window_minutes=60),
        "cultural_context": RateLimitConfig(max_requests=100, window_minutes=60),
        "formality": RateLimitConfig(max_requests=100, window_minutes=60),
        "smart_reply": RateLimitConfig(max_requests=50, window_minutes=60),
        "transcription": RateLimitConfig(max_requests=50, window_minutes=60),
        "entity_extraction": RateLimitConfig(max_requests=50, window_minutes=60),
    }

    # Sync
    message_page_size: int = 50
    transaction_max_attempts: int = 5

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    def ttl_for(self, operation: str) -> int:
        """Durable cache TTL for an operation, in seconds."""
        return getattr(self, f"{operation}_ttl_seconds")

    def rate_limit_for(self, operation: str) -> RateLimitConfig:
        return self.rate_limits.get(operation, RateLimitConfig())


# Global settings instance
settings = Settings()
