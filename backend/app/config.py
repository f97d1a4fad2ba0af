from functools import lru_cache
from pathlib import Path
from typing import Annotated, List

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = Field(default="Murmur API", description="Human readable service name")
    environment: str = Field(default="development", description="Deployment environment name")
    debug: bool = Field(default=False, description="Enable debug mode")

    cors_origins: Annotated[List[AnyHttpUrl], NoDecode] = Field(
        default_factory=lambda: [
            "http://localhost",
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ],
        description="List of allowed CORS origins",
    )

    db_user: str = Field(default="murmur")
    db_password: str = Field(default="murmur")
    db_host: str = Field(default="db")
    db_port: int = Field(default=3306)
    db_name: str = Field(default="murmur")
    database_url_override: str | None = Field(
        default=None,
        alias="DATABASE_URL",
        description="Full SQLAlchemy URL; takes precedence over the DB_* parts",
    )

    jwt_secret_key: str = Field(default="changeme")
    jwt_algorithm: str = Field(default="HS256")
    access_token_expire_minutes: int = Field(default=60 * 24)

    realtime_redis_url: str | None = Field(
        default=None,
        description=(
            "Redis URL shared by every API process for presence, call state and relay. "
            "When unset the process runs single-node with an in-memory store."
        ),
    )
    realtime_namespace: str = Field(default="murmur.realtime")
    realtime_node_id: str | None = Field(
        default=None, description="Stable identifier of this process; random when unset"
    )
    presence_scan_batch_size: int = Field(default=500, ge=1)
    delivery_fanout_limit: int = Field(
        default=5000, ge=1, description="Maximum recipients resolved for a single fan-out event"
    )

    call_ring_ttl_seconds: int = Field(default=60, ge=1)
    call_active_ttl_seconds: int = Field(default=4 * 60 * 60, ge=1)
    call_pending_ttl_seconds: int = Field(default=60, ge=1)

    chat_history_default_limit: int = Field(default=12)
    chat_history_max_limit: int = Field(default=100)
    chat_message_max_length: int = Field(default=5000)

    media_root: Path = Field(default=Path("uploads"))
    media_base_url: str = Field(default="/api/media")
    max_upload_size: int = Field(
        default=10 * 1024 * 1024, description="Maximum upload size in bytes"
    )

    notification_cap: int = Field(default=100, ge=1)
    notification_retention_days: int = Field(default=30, ge=1)
    notification_page_size: int = Field(default=50, ge=1)
    activity_cap: int = Field(default=15, ge=1)
    activity_horizon_hours: int = Field(default=6, ge=1)
    activity_cleanup_interval_seconds: int = Field(
        default=60 * 60, description="Period of the background activity cleanup; 0 disables it"
    )

    push_notifications_enabled: bool = Field(
        default=False,
        description="Toggle push notifications for users without a live connection.",
    )
    push_gateway_url: AnyHttpUrl | None = Field(
        default=None, description="HTTP endpoint of the push relay (FCM/APNs bridge)."
    )
    push_gateway_token: str | None = Field(default=None)
    push_timeout_seconds: float = Field(default=5.0)

    websocket_keepalive_timeout_seconds: float = Field(default=30.0)
    websocket_keepalive_ping_interval_seconds: float = Field(default=25.0)

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
            f"mysql+pymysql://{self.db_user}:{self.db_password}"
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

    @field_validator("media_root", mode="before")
    @classmethod
    def resolve_media_root(cls, value: str | Path) -> Path:
        if isinstance(value, Path):
            return value.resolve()
        return Path(value).resolve()


@lru_cache
def get_settings() -> Settings:
    return Settings()
