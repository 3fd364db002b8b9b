from __future__ import annotations

from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    """
    Application-level settings for the FastAPI service.

    This is separate from mfgerp.db.config.Settings, which focuses on the database layer.
    """

    # FastAPI metadata
    APP_NAME: str = Field(default="Manufacturing Execution API")
    APP_DESCRIPTION: str = Field(
        default=(
            "Multi-tenant manufacturing order execution: BOM resolution, order planning, "
            "the stock ledger and the manufacturing/work order state machine."
        )
    )
    APP_VERSION: str = Field(default="0.1.0")

    # CORS
    CORS_ORIGINS: List[str] = Field(
        default_factory=lambda: ["*"],
        description="Comma-separated list or JSON array of allowed origins. Default: *",
    )
    CORS_ALLOW_CREDENTIALS: bool = Field(default=True)
    CORS_ALLOW_METHODS: List[str] = Field(default_factory=lambda: ["*"])
    CORS_ALLOW_HEADERS: List[str] = Field(default_factory=lambda: ["*"])

    # Startup behavior
    RUN_MIGRATIONS_ON_STARTUP: bool = Field(
        default=True,
        description="If true, run Alembic migrations (upgrade head) at app startup.",
    )
    AUTO_SEED: bool = Field(
        default=False,
        description="If true, seed a demo tenant after migrations.",
    )
    SEED_ADMIN_EMAIL: str = Field(default="admin@acme.com")
    SEED_ADMIN_PASSWORD: str = Field(default="admin123", description="Password of the seeded admin user.")
    LOG_LEVEL: str = Field(default="INFO")

    # Auth
    JWT_SECRET_KEY: str = Field(default="change-me", description="HMAC key for signing tokens.")
    JWT_ALGORITHM: str = Field(default="HS256")
    ACCESS_TOKEN_EXPIRE_MINUTES: int = Field(default=30)
    REFRESH_TOKEN_EXPIRE_MINUTES: int = Field(default=60 * 24 * 7)

    # Domain defaults
    DEFAULT_TENANT_SLUG: str = Field(default="acme")
    ORDER_NUMBER_PREFIX: str = Field(default="MO")
    WORK_ORDER_NUMBER_PREFIX: str = Field(default="WO")
    ALLOW_NEGATIVE_STOCK_DEFAULT: bool = Field(
        default=False,
        description="Whether stock may go negative for voucher types without a tenant policy.",
    )

    # Environment label
    ENVIRONMENT: Optional[str] = Field(
        default=None, description="Environment label (dev/test/prod)"
    )

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def _parse_cors_origins(cls, v):
        """
        Accept both JSON array format and comma-separated formats for CORS origins.
        """
        if v is None:
            return ["*"]
        if isinstance(v, str):
            parts = [p.strip() for p in v.split(",") if p.strip()]
            return parts or ["*"]
        if isinstance(v, list):
            return v or ["*"]
        return ["*"]


# PUBLIC_INTERFACE
def get_app_settings() -> AppSettings:
    """
    Return a new AppSettings instance populated from environment variables.

    A fresh instance per call keeps tests free to monkeypatch the environment.
    """
    return AppSettings()
