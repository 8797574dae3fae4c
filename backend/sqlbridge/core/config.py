"""
Process settings (env-driven, pydantic-settings).

Values are read once at import into ``settings``; the core components take the
values they need as constructor arguments so tests can build them directly.
"""

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from sqlbridge.models import ProductTypeEnum


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
    )

    ENVIRONMENT: Literal["local", "staging", "production"] = "local"
    SENTRY_DSN: str | None = None
    LOG_LEVEL: str = "INFO"
    SQL_LOGGING: bool = False

    # Database
    DB_PRODUCT_TYPE: ProductTypeEnum = ProductTypeEnum.POSTGRES
    DB_HOST: str = "localhost"
    DB_PORT: int = Field(default=5432, ge=1, le=65535)
    DB_NAME: str = "postgres"
    DB_USER: str = "postgres"
    DB_PASSWORD: str = ""
    DB_SSL: bool = False
    DATABASE_URL: str | None = None
    DB_CONNECT_TIMEOUT: int = Field(default=10, ge=1)

    # Pool
    POOL_MIN: int = Field(default=2, ge=0)
    POOL_MAX: int = Field(default=10, ge=1)
    POOL_IDLE_TIMEOUT_MS: int = Field(default=30_000, ge=0)
    POOL_ACQUIRE_TIMEOUT_MS: int = Field(default=60_000, ge=1)
    POOL_MAX_LIFETIME_SEC: float = Field(default=600.0, gt=0)
    POOL_REAP_INTERVAL_MS: int = Field(default=1_000, ge=10)

    # Query result cache
    CACHE_ENABLED: bool = True
    CACHE_TTL_MS: int = Field(default=300_000, ge=1)
    CACHE_MAX_KEYS: int = Field(default=1_000, ge=1)

    # Rate limiting
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_MAX: int = Field(default=100, ge=1)
    RATE_LIMIT_WINDOW_MS: int = Field(default=60_000, ge=1)

    # Security / session
    MAX_QUERY_TIME_MS: int = Field(default=30_000, ge=1_000)
    TRANSACTION_TIMEOUT_SEC: float = Field(default=300.0, gt=0)
    READ_ONLY_MODE: bool = False

    # Retry
    RETRY_MAX_ATTEMPTS: int = Field(default=3, ge=1)
    RETRY_BASE_DELAY_MS: int = Field(default=1_000, ge=0)
    RETRY_MAX_DELAY_MS: int = Field(default=30_000, ge=0)

    @model_validator(mode="after")
    def _pool_bounds(self) -> "Settings":
        if self.POOL_MIN > self.POOL_MAX:
            raise ValueError("POOL_MIN cannot be greater than POOL_MAX")
        return self


settings = Settings()  # type: ignore
