from functools import lru_cache
from pathlib import Path
from typing import Annotated, List

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = Field(default="RelayChat API", env="APP_NAME", description="Human readable service name")
    environment: str = Field(default="development", env="ENVIRONMENT", description="Deployment environment name")
    debug: bool = Field(default=False, env="DEBUG", description="Enable debug mode")
    port: int = Field(default=3000, env="PORT", description="Port the HTTP server listens on")

    cors_origins: Annotated[List[AnyHttpUrl], NoDecode] = Field(
        default_factory=lambda: [
            "http://localhost:5173",
            "http://localhost:3000",
            "http://127.0.0.1:5173",
        ],
        env="CORS_ORIGINS",
        description="List of allowed CORS origins",
    )

    database_url_override: str | None = Field(
        default=None,
        alias="DATABASE_URL",
        description="Full SQLAlchemy URL of the storage database; overrides the DB_* parts",
    )
    db_user: str = Field(default="postgres", env="DB_USER")
    db_password: str = Field(default="postgres", env="DB_PASSWORD")
    db_host: str = Field(default="localhost", env="DB_HOST")
    db_port: int = Field(default=5432, env="DB_PORT")
    db_name: str = Field(default="postgres", env="DB_NAME")

    messaging_api_key: str | None = Field(
        default=None,
        env="MESSAGING_API_KEY",
        description="Messaging service key in '<keyName>:<keySecret>' form used to sign scoped tokens",
    )
    realtime_redis_url: str | None = Field(
        default="redis://localhost:6379/0",
        env="REALTIME_REDIS_URL",
        description="URL of the pub/sub broker backing the messaging service",
    )
    realtime_namespace: str = Field(default="relaychat", env="REALTIME_NAMESPACE")
    jwt_algorithm: str = Field(default="HS256", env="JWT_ALGORITHM")
    token_ttl_minutes: int = Field(
        default=60,
        env="TOKEN_TTL_MINUTES",
        description="Lifetime of scoped realtime credentials",
    )
    roster_debounce_seconds: float = Field(
        default=0.25,
        env="ROSTER_DEBOUNCE_SECONDS",
        description="Window during which roster broadcast triggers are coalesced",
    )
    presence_timeout_seconds: float = Field(
        default=45.0,
        gt=0,
        env="PRESENCE_TIMEOUT_SECONDS",
        description="Silence after which an online user is marked offline; clients re-enter every 15s",
    )
    presence_sweep_seconds: float = Field(
        default=15.0,
        gt=0,
        env="PRESENCE_SWEEP_SECONDS",
        description="How often stale presence is expired",
    )

    chat_history_default_limit: int = Field(default=50, env="CHAT_HISTORY_DEFAULT_LIMIT")
    chat_history_max_limit: int = Field(default=100, env="CHAT_HISTORY_MAX_LIMIT")
    chat_message_max_length: int = Field(default=2000, env="CHAT_MESSAGE_MAX_LENGTH")

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[2] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+psycopg://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v):  # type: ignore[override]
        if v in (None, "", Ellipsis):
            return v
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        if isinstance(v, (list, tuple, set)):
            return list(v)
        return v

    @field_validator("messaging_api_key", mode="before")
    @classmethod
    def blank_key_is_missing(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = str(value).strip()
        return value or None


@lru_cache
def get_settings() -> Settings:
    return Settings()
