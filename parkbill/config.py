"""
Configuration settings for the parking session & billing engine.

Uses Pydantic Settings to load environment variables for the database
connection, the operating mode of the session store, retry behaviour of the
command backend, logging, and the default hourly rates per vehicle class.
"""
from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from typing import Dict, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

StoreMode = Literal["auto", "backed", "local"]


class Settings(BaseSettings):
    # Database
    db_host: str = Field("localhost", alias="DB_HOST")
    db_port: int = Field(5432, alias="DB_PORT")
    db_user: str = Field("postgres", alias="DB_USER")
    db_password: str = Field("postgres", alias="DB_PASSWORD")
    db_name: str = Field("parkbill", alias="DB_NAME")
    db_statement_timeout_ms: int = Field(5_000, alias="DB_STATEMENT_TIMEOUT_MS")
    db_connect_timeout_s: int = Field(3, alias="DB_CONNECT_TIMEOUT_S")
    pool_min_size: int = Field(1, alias="POOL_MIN_SIZE")
    pool_max_size: int = Field(5, alias="POOL_MAX_SIZE")

    # Application
    app_env: str = Field("development", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_json: bool = Field(False, alias="LOG_JSON")
    store_mode: StoreMode = Field("auto", alias="STORE_MODE")

    # Command backend retries (linear backoff: backoff, 2*backoff, ...)
    retry_max_attempts: int = Field(3, ge=1, alias="RETRY_MAX_ATTEMPTS")
    retry_backoff_seconds: float = Field(1.0, ge=0, alias="RETRY_BACKOFF_SECONDS")

    # Backed-mode read cache; entries older than this are refetched (0 disables caching)
    cache_ttl_seconds: float = Field(5.0, ge=0, alias="CACHE_TTL_SECONDS")

    # Default hourly rates per vehicle class
    rate_car: Decimal = Field(Decimal("50"), ge=0, alias="RATE_CAR")
    rate_motorcycle: Decimal = Field(Decimal("30"), ge=0, alias="RATE_MOTORCYCLE")
    rate_truck: Decimal = Field(Decimal("80"), ge=0, alias="RATE_TRUCK")
    rate_bicycle: Decimal = Field(Decimal("15"), ge=0, alias="RATE_BICYCLE")

    # Listing defaults
    list_default_limit: int = Field(50, ge=1, alias="LIST_DEFAULT_LIMIT")
    list_max_limit: int = Field(500, ge=1, alias="LIST_MAX_LIMIT")
    search_limit: int = Field(20, ge=1, alias="SEARCH_LIMIT")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def dsn(self) -> str:
        return (
            f"postgresql://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )

    def default_rates(self) -> Dict[str, Decimal]:
        """Hourly rate per vehicle class value (``"car"``, ``"truck"``, ...)."""
        return {
            "car": self.rate_car,
            "motorcycle": self.rate_motorcycle,
            "truck": self.rate_truck,
            "bicycle": self.rate_bicycle,
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Retrieve a cached instance of Settings to avoid repeated env parsing.
    """
    return Settings()


__all__ = ["Settings", "StoreMode", "get_settings"]
