from functools import lru_cache
from pathlib import Path
from typing import Annotated, List

from pydantic import AliasChoices, AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = Field(
        default="Parley API",
        validation_alias=AliasChoices("APP_NAME", "app_name"),
        description="Human readable service name",
    )
    environment: str = Field(
        default="development",
        validation_alias=AliasChoices("ENVIRONMENT", "environment"),
        description="Deployment environment name",
    )
    debug: bool = Field(default=False, validation_alias=AliasChoices("DEBUG", "debug"))

    cors_origins: Annotated[List[AnyHttpUrl], NoDecode] = Field(
        default_factory=lambda: [
            "http://localhost",
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1",
            "http://127.0.0.1:3000",
        ],
        validation_alias=AliasChoices("CORS_ORIGINS", "cors_origins"),
        description="List of allowed CORS origins",
    )
    cors_allow_origin_regex: str | None = Field(
        default=r"^https?://(localhost|127\.0\.0\.1|\[::1\])(:\d+)?$",
        validation_alias=AliasChoices("CORS_ALLOW_ORIGIN_REGEX", "cors_allow_origin_regex"),
    )

    database_user: str = Field(default="parley", validation_alias=AliasChoices("DB_USER", "database_user"))
    database_password: str = Field(
        default="parley", validation_alias=AliasChoices("DB_PASSWORD", "database_password")
    )
    database_host: str = Field(default="db", validation_alias=AliasChoices("DB_HOST", "database_host"))
    database_port: int = Field(default=3306, validation_alias=AliasChoices("DB_PORT", "database_port"))
    database_name: str = Field(default="parley", validation_alias=AliasChoices("DB_NAME", "database_name"))
    database_dsn: str | None = Field(
        default=None,
        validation_alias=AliasChoices("DATABASE_URL", "database_dsn"),
        description="Full SQLAlchemy URL overriding the individual DB_* parts",
    )

    jwt_secret_key: str = Field(
        default="changeme", validation_alias=AliasChoices("JWT_SECRET_KEY", "jwt_secret_key")
    )
    jwt_algorithm: str = Field(default="HS256", validation_alias=AliasChoices("JWT_ALGORITHM", "jwt_algorithm"))
    access_token_expire_minutes: int = Field(
        default=60,
        validation_alias=AliasChoices("ACCESS_TOKEN_EXPIRE_MINUTES", "access_token_expire_minutes"),
    )

    chat_history_default_limit: int = Field(
        default=50,
        validation_alias=AliasChoices("CHAT_HISTORY_DEFAULT_LIMIT", "chat_history_default_limit"),
    )
    chat_history_max_limit: int = Field(
        default=100, validation_alias=AliasChoices("CHAT_HISTORY_MAX_LIMIT", "chat_history_max_limit")
    )
    chat_list_default_limit: int = Field(
        default=20, validation_alias=AliasChoices("CHAT_LIST_DEFAULT_LIMIT", "chat_list_default_limit")
    )
    chat_message_max_length: int = Field(
        default=4000,
        validation_alias=AliasChoices("CHAT_MESSAGE_MAX_LENGTH", "chat_message_max_length"),
    )

    rate_limit_enabled: bool = Field(
        default=True, validation_alias=AliasChoices("RATE_LIMIT_ENABLED", "rate_limit_enabled")
    )
    rate_limit_api_max_requests: int = Field(
        default=100,
        validation_alias=AliasChoices("RATE_LIMIT_API_MAX_REQUESTS", "rate_limit_api_max_requests"),
    )
    rate_limit_api_window_seconds: int = Field(
        default=15 * 60,
        validation_alias=AliasChoices("RATE_LIMIT_API_WINDOW_SECONDS", "rate_limit_api_window_seconds"),
    )
    rate_limit_auth_max_requests: int = Field(
        default=50,
        validation_alias=AliasChoices("RATE_LIMIT_AUTH_MAX_REQUESTS", "rate_limit_auth_max_requests"),
        description="Login and registration attempts allowed per client per window",
    )
    rate_limit_auth_window_seconds: int = Field(
        default=60 * 60,
        validation_alias=AliasChoices("RATE_LIMIT_AUTH_WINDOW_SECONDS", "rate_limit_auth_window_seconds"),
    )

    websocket_keepalive_timeout_seconds: float = Field(
        default=30,
        validation_alias=AliasChoices(
            "WEBSOCKET_KEEPALIVE_TIMEOUT_SECONDS", "websocket_keepalive_timeout_seconds"
        ),
        description="Idle period after which the server pings the socket",
    )
    websocket_ping_interval_seconds: float = Field(
        default=25,
        validation_alias=AliasChoices("WEBSOCKET_PING_INTERVAL_SECONDS", "websocket_ping_interval_seconds"),
    )
    websocket_handshake_timeout_seconds: float = Field(
        default=10,
        validation_alias=AliasChoices(
            "WEBSOCKET_HANDSHAKE_TIMEOUT_SECONDS", "websocket_handshake_timeout_seconds"
        ),
        description="Window for sending the authenticate frame when no token was passed on connect",
    )

    realtime_redis_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("REALTIME_REDIS_URL", "realtime_redis_url"),
        description="Redis URL enabling cross-node room fan-out",
    )
    realtime_namespace: str = Field(
        default="parley.realtime",
        validation_alias=AliasChoices("REALTIME_NAMESPACE", "realtime_namespace"),
    )
    realtime_node_id: str | None = Field(
        default=None, validation_alias=AliasChoices("REALTIME_NODE_ID", "realtime_node_id")
    )

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[2] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def database_url(self) -> str:
        if self.database_dsn:
            return self.database_dsn
        return (
            f"mysql+pymysql://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
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

    @field_validator("realtime_redis_url", "realtime_node_id", "database_dsn", mode="before")
    @classmethod
    def blank_as_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()
