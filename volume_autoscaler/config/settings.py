# volume_autoscaler/config/settings.py

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from volume_autoscaler.domain.intent import DEFAULT_METRICS_ENDPOINT


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="VOLUME_AUTOSCALER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Discovery ---
    namespace: str = ""  # empty watches every namespace
    resync_interval_seconds: float = Field(30.0, gt=0)

    # --- Metrics backend ---
    default_metrics_endpoint: str = DEFAULT_METRICS_ENDPOINT
    metrics_timeout_seconds: float = Field(10.0, gt=0)

    # --- Reconcile ---
    cycle_deadline_fraction: float = Field(0.8, gt=0, lt=1)
    dry_run: bool = False
    intent_file: Optional[str] = None

    # --- Observability ---
    metrics_port: int = 8080
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()
