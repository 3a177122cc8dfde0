"""Configuration loading (environment variables prefixed ``SI_``)."""

from __future__ import annotations

from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from si_models.types import (
    DEFAULT_DOWNLOAD_WORKERS,
    DEFAULT_HUB_ENDPOINT,
    DEFAULT_HUB_REVISION,
    DEFAULT_LOCK_TIMEOUT,
    DEFAULT_MODELS_DIR,
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="SI_", populate_by_name=True)

    models_dir: Path = Field(
        default=DEFAULT_MODELS_DIR,
        description="Storage root holding one subdirectory per model.",
    )
    lock_timeout: float = Field(
        default=DEFAULT_LOCK_TIMEOUT,
        gt=0,
        description="Seconds a mutating operation waits for the index lock.",
    )
    verify_hashes: bool = Field(
        default=False,
        description="Check sha256 hashes during register and verify when known.",
    )
    hub_endpoint: str = Field(default=DEFAULT_HUB_ENDPOINT)
    hub_revision: str = Field(default=DEFAULT_HUB_REVISION)
    hub_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices("SI_HUB_TOKEN", "HF_TOKEN"),
    )
    download_workers: int = Field(default=DEFAULT_DOWNLOAD_WORKERS, ge=1)


def get_settings() -> Settings:
    """Create and validate settings. Fails fast on invalid state."""
    return Settings()
