"""Application configuration loaded from environment variables."""
from functools import lru_cache
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central place for strongly typed application settings."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = Field(default="Excel Bulk Import Service")
    environment: Literal["development", "staging", "production"] = Field(default="development")

    database_url: str = Field(validation_alias="DATABASE_URL")
    target_database_url: str | None = Field(default=None, validation_alias="TARGET_DATABASE_URL")
    redis_url: str = Field(validation_alias="REDIS_URL")
    celery_broker_url: str = Field(validation_alias="CELERY_BROKER_URL")
    celery_result_backend: str = Field(validation_alias="CELERY_RESULT_BACKEND")

    max_upload_size_mb: int = Field(default=50)
    allowed_extensions: tuple[str, ...] = Field(default=(".xlsx", ".xlsm", ".csv"))

    # Pipeline
    import_batch_size: int = Field(default=500, gt=0)
    insert_strategy: Literal["bulk", "per_row"] = Field(default="bulk")
    failed_records_limit: int = Field(default=100, ge=0)

    # Shared connection pool for the target database
    db_pool_size: int = Field(default=10)
    db_pool_max_overflow: int = Field(default=5)
    db_pool_timeout_seconds: int = Field(default=30)
    db_statement_timeout_ms: int = Field(default=30_000)

    # Worker coordination
    worker_concurrency: int = Field(default=5, gt=0)
    job_rate_limit: str = Field(default="10/s")
    import_max_retries: int = Field(default=3, ge=0)
    retry_backoff_seconds: int = Field(default=5, gt=0)
    retry_backoff_max_seconds: int = Field(default=600)
    task_time_limit_seconds: int = Field(default=3600)
    task_soft_time_limit_seconds: int = Field(default=3300)

    # Retention
    completed_job_ttl_hours: int = Field(default=24)
    completed_job_keep: int = Field(default=100)
    failed_job_ttl_days: int = Field(default=7)
    progress_ttl_seconds: int = Field(default=3600)

    # Stalled job detection
    stalled_job_threshold_seconds: int = Field(default=600)
    stalled_check_interval_seconds: int = Field(default=300)

    @model_validator(mode="after")
    def convert_database_urls(self) -> "Settings":
        """Convert postgresql+psycopg:// (psycopg3) to postgresql:// (psycopg2)."""
        if self.database_url.startswith("postgresql+psycopg://"):
            self.database_url = self.database_url.replace("postgresql+psycopg://", "postgresql://")
        if self.target_database_url is None:
            self.target_database_url = self.database_url
        elif self.target_database_url.startswith("postgresql+psycopg://"):
            self.target_database_url = self.target_database_url.replace(
                "postgresql+psycopg://", "postgresql://"
            )
        return self


@lru_cache
def get_settings() -> Settings:
    """Return cached Settings instance so downstream code can import directly."""

    return Settings()
