"""Settings for processes embedding the chat client."""

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ClientSettings(BaseSettings):
    """Where the client finds the chat server, the identity service and the broker."""

    api_url: str = Field(
        default="http://localhost:3000/api",
        env="API_URL",
        description="Base URL of the chat server API, including the /api prefix",
    )
    supabase_url: str | None = Field(default=None, env="SUPABASE_URL", description="Identity service base URL")
    supabase_anon_key: str | None = Field(
        default=None,
        env="SUPABASE_ANON_KEY",
        description="Public key sent with every identity service request",
    )
    realtime_redis_url: str | None = Field(default="redis://localhost:6379/0", env="REALTIME_REDIS_URL")
    realtime_namespace: str = Field(default="relaychat", env="REALTIME_NAMESPACE")
    chat_history_page_size: int = Field(default=50, ge=1, le=100, env="CHAT_HISTORY_PAGE_SIZE")
    request_timeout_seconds: float = Field(default=10.0, env="REQUEST_TIMEOUT_SECONDS")
    presence_heartbeat_seconds: float = Field(
        default=15.0,
        gt=0,
        env="PRESENCE_HEARTBEAT_SECONDS",
        description="How often a connected session re-announces its presence",
    )

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @field_validator("api_url", "supabase_url", mode="after")
    @classmethod
    def strip_trailing_slash(cls, value: str | None) -> str | None:
        return value.rstrip("/") if value else value


@lru_cache
def get_client_settings() -> ClientSettings:
    return ClientSettings()
