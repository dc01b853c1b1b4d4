from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator, model_validator
from typing import Any, ClassVar
import json
from pathlib import Path
import os


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="ignore",
        case_sensitive=True,
    )

    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "ServiceHub Realtime"

    # JWT configuration (provide a fallback for local development)
    SECRET_KEY: str = "fallback_secret_for_dev_only"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 7

    # Database URL
    # Use an absolute path so running the app from different directories
    # (e.g., repo root or backend/) always resolves the same DB file.
    BASE_DIR: ClassVar[Path] = Path(__file__).resolve().parents[2]
    SQLALCHEMY_DATABASE_URL: str = f"sqlite:///{BASE_DIR / 'servicehub.db'}"
    DB_POOL_SIZE: int = 6
    DB_MAX_OVERFLOW: int = 6
    DB_POOL_RECYCLE: int = 300
    DB_POOL_TIMEOUT: float = 5.0

    # Redis pub/sub bus for cross-process room fan-out
    REDIS_URL: str = "redis://localhost:6379/0"
    WS_BUS_ENABLED: bool = False
    INSTANCE_ID: str = ""

    # WebSocket transport knobs
    WS_AUTH_TIMEOUT: float = 10.0
    WS_MAX_BEARER_LEN: int = 4096
    WS_MAX_PROTOCOL_HEADER_LEN: int = 8192
    WS_DB_CONCURRENCY: int = 8
    WS_PER_USER_LIMIT: int = 10
    WS_PER_IP_LIMIT: int = 50
    WS_PING_INTERVAL: float = 30.0
    WS_PONG_TIMEOUT: float = 75.0
    WS_SEND_TIMEOUT: float = 10.0

    # Notifications expire from listings after this many days
    NOTIFICATION_TTL_DAYS: int = 30

    # CORS origins
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]
    CORS_ALLOW_ALL: bool = False

    LOG_LEVEL: str = "INFO"
    ENABLE_CONSOLE_TRACING: bool = False
    OTEL_EXCLUDE_WS: bool = True

    # R2 / S3-compatible storage for chat attachments
    R2_ACCOUNT_ID: str = ""
    R2_ACCESS_KEY_ID: str = ""
    R2_SECRET_ACCESS_KEY: str = ""
    R2_BUCKET: str = ""
    # Example: https://<account_id>.r2.cloudflarestorage.com or EU endpoint
    R2_S3_ENDPOINT: str = ""
    # Public custom domain for reads (e.g., https://media.example.com)
    R2_PUBLIC_BASE_URL: str = ""
    ATTACHMENT_MAX_BYTES: int = 10 * 1024 * 1024

    @field_validator("CORS_ORIGINS", mode="before")
    def split_origins(cls, v: Any) -> list[str]:
        """Parse comma-separated or JSON list of origins from environment."""
        if isinstance(v, str):
            try:
                parsed = json.loads(v)
                if isinstance(parsed, list):
                    return parsed
            except json.JSONDecodeError:
                pass
            return [s.strip() for s in v.split(",") if s.strip()]
        return v

    @field_validator(
        "SECRET_KEY",
        "REDIS_URL",
        "R2_BUCKET",
        "R2_S3_ENDPOINT",
        "R2_PUBLIC_BASE_URL",
        mode="before",
    )
    def strip_whitespace(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip()
        return v

    @model_validator(mode="after")
    def allow_all_if_requested(self) -> "Settings":
        if self.CORS_ALLOW_ALL:
            self.CORS_ORIGINS = ["*"]
        return self

    @model_validator(mode="after")
    def default_instance_id(self) -> "Settings":
        # Bus envelopes carry this id so a process ignores its own publications.
        if not self.INSTANCE_ID:
            self.INSTANCE_ID = "inst-" + os.urandom(4).hex()
        return self


def load_settings() -> "Settings":
    return Settings(_env_file=os.getenv("ENV_FILE", str(Path(__file__).resolve().parents[3] / ".env")))


settings = load_settings()
