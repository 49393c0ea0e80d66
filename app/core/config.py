"""Application configuration using Pydantic settings."""

from functools import lru_cache
from typing import List, Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central application configuration."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)

    app_name: str = "Image Pipeline Backend"
    environment: str = "development"
    debug: bool = True

    api_v1_prefix: str = "/v1"
    cors_allowed_origins: List[str] = ["*"]

    redis_url: str = "redis://localhost:6379/0"

    celery_broker_url: str | None = None
    celery_result_backend: str | None = None
    # Runs tasks inline in the calling process; local development only.
    celery_task_always_eager: bool = False

    # "memory" keeps jobs and records in-process (eager Celery only).
    job_backend: Literal["memory", "redis"] = "memory"
    redis_key_prefix: str = "imagepipe"

    storage_dir: str = "./storage"
    storage_public_base_url: str = "http://localhost:8000/storage"

    max_image_dimension: int = 4000
    default_quality: int = 80
    watermark_scale: float = 0.2

    optimize_quality: int = 85
    optimize_min_reduction: float = 0.2

    transform_max_attempts: int = 3
    transform_backoff_seconds: float = 2.0
    optimize_max_attempts: int = 2
    optimize_backoff_seconds: float = 1.0

    job_lease_seconds: int = 30
    stall_check_interval_seconds: int = 30
    # Waiting jobs due for longer than this are assumed to have lost their message.
    waiting_redispatch_seconds: int = 300
    completed_job_retention_seconds: int = 24 * 60 * 60

    default_storage_quota_bytes: int = 100 * 1024 * 1024

    auth_jwt_secret: str = "change-me"
    auth_token_header: str = "Authorization"
    owner_header: str = "X-User-Id"


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


settings = get_settings()
