"""Lookout - Configuration."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: str = "development"
    debug: bool = False

    # Local registry API
    host: str = "0.0.0.0"
    port: int = 8100

    # Upstream server
    api_url: str = "http://localhost:3000/api/web"
    socket_url: str = "ws://localhost:3000/ws"
    auth_token: str = ""

    # Presence
    refresh_interval_seconds: float = 10.0
    heartbeat_interval_seconds: int = 30
    show_archived: bool = False

    # Push channel
    reconnect_attempts: int = 10
    reconnect_delay_ms: int = 2000
    reconnect_max_delay_ms: int = 30000
    connect_timeout: float = 5.0

    # HTTP fallback
    request_timeout: float = 30.0


settings = Settings()
