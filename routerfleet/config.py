from __future__ import annotations

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_PROD_ENV_NAMES = {"prod", "production"}


class Settings(BaseSettings):
    app_name: str = Field(default="RouterFleet")
    app_env: str = Field(default="dev")
    app_version: str = Field(default="0.1.0")

    database_url: str = Field(default="")

    log_level: str = Field(default="INFO")
    log_file: str = Field(default="data/app.log")
    log_db_queries: bool = Field(default=False)
    log_db_query_params: bool = Field(default=False)
    log_sql_max_length: int = Field(default=400)

    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=8000)

    credential_key: str = Field(default="")

    dispatch_max_concurrency: int = Field(default=10, ge=1)
    dispatch_timeout_seconds: float = Field(default=15.0, gt=0)

    routeros_request_timeout_seconds: float = Field(default=10.0, gt=0)
    routeros_max_workers: int = Field(default=32, ge=1)

    health_check_enabled: bool = Field(default=True)
    health_check_interval_seconds: int = Field(default=60, ge=1)
    health_check_initial_delay_seconds: int = Field(default=5, ge=0)
    health_check_timeout_seconds: float = Field(default=10.0, gt=0)

    audit_retention_days: int = Field(default=90, ge=0)
    audit_prune_interval_seconds: int = Field(default=7 * 24 * 3600, ge=60)

    metrics_enabled: bool = Field(default=True)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_required(self) -> "Settings":
        if not self.database_url:
            raise ValueError("DATABASE_URL must be set in .env or environment variables.")
        if self.app_env.strip().lower() in _PROD_ENV_NAMES and not self.credential_key:
            raise ValueError("CREDENTIAL_KEY must be set in production.")
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
