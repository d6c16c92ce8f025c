"""Application configuration using Pydantic settings."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_env: Literal["development", "staging", "production"] = "development"
    app_debug: bool = False
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # Persistence
    data_dir: Path = Path("data")

    # Connect every tenant with stored credentials on startup
    auto_connect: bool = True

    # Evolution API (messaging network)
    evolution_api_url: str = "http://localhost:8080"
    evolution_api_key: str = ""
    # Public URL the Evolution server posts events to; {tenant_id} is substituted
    evolution_webhook_url: str | None = None

    # Shared key expected in the apikey header of incoming webhooks
    webhook_api_key: str = ""

    # Discord (collaboration platform)
    discord_api_url: str = "https://discord.com/api/v10"
    discord_bot_token: str = ""
    discord_bot_user_id: str = ""

    # Session lifecycle
    qr_ttl_seconds: float = Field(default=45.0, gt=0)
    connect_timeout_seconds: float = Field(default=30.0, gt=0)

    # Reconnection backoff
    reconnect_base_ms: int = Field(default=1000, gt=0)
    reconnect_cap_ms: int = Field(default=30000, gt=0)
    reconnect_max_attempts: int = Field(default=5, ge=0)

    # Tickets
    transcript_timeout_seconds: float = Field(default=30.0, gt=0)

    # Outbound HTTP
    http_timeout_seconds: float = 30.0

    # Logging
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "json"

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
