"""Environment-based configuration for Autotagger."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from AUTOTAGGER_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="AUTOTAGGER_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083

    # Authentication (None = disabled)
    api_key: str | None = None

    # Model selection and storage
    model_name: str = "ssd_mobilenet_v1_coco"
    model_source: Literal["local", "http", "huggingface"] = "local"
    models_dir: str = "models"
    models_base_url: str | None = None
    models_repo_id: str | None = None
    fetch_timeout: float = Field(default=30.0, gt=0)

    # Worker
    worker_mode: Literal["process", "thread"] = "process"
    init_timeout: float = Field(default=30.0, gt=0)
    load_timeout: float = Field(default=120.0, gt=0)
    execute_timeout: float = Field(default=30.0, gt=0)

    # Tag fields
    tag_field_path_prefix: str = "/entity_reference_autocomplete/taxonomy_term/"
    result_history: int = Field(default=256, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=209_715_200, ge=1)

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
