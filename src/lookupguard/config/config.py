"""
Configuration management for lookupguard using Pydantic.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional, Tuple

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from lookupguard.protocols import ABSOLUTE_MAX_BATCH_SIZE

# --- Setup Logging ---
log = logging.getLogger(__name__)

# --- Nested Configuration Models ---


class BatchConfig(BaseModel):
    """Adaptive batch controller settings."""

    min_batch_size: int = Field(default=3, description="Floor for adaptive shrinking (clamped into [1, 5]).")
    max_batch_size: int = Field(
        default=ABSOLUTE_MAX_BATCH_SIZE,
        le=ABSOLUTE_MAX_BATCH_SIZE,
        description="Requested batch ceiling. Values above 5 are rejected.",
    )
    inter_batch_delay_ms: Tuple[int, int] = Field(
        default=(2000, 5000), description="Randomised delay range between batches, in milliseconds."
    )
    success_rate_threshold: float = Field(
        default=0.5, description="Batches below this success rate shrink the adaptive size."
    )
    enable_detection: bool = Field(default=True, description="Run bot-signal checks before each batch.")


class DetectionConfig(BaseModel):
    """Bot-signal classifier settings."""

    failed_lookup_threshold: float = Field(default=0.5, description="Failure rate above which a signal is raised.")
    enable_html_detection: bool = True
    enable_selector_detection: bool = True
    enable_http_detection: bool = True
    status_timeout_ms: int = Field(default=5000, description="Timeout for the HTTP status re-check.")


class RetryQueueConfig(BaseModel):
    """Configuration for the durable retry queue."""

    db_path: Path = Field(
        default_factory=lambda: Path.home() / ".lookupguard" / "retry_queue.db",
        description="SQLite database file for retry rows",
    )
    max_retries: int = Field(default=3, ge=0, description="Maximum attempts before an item is discarded.")
    base_delay_ms: int = Field(default=1000, ge=0, description="Base delay for exponential backoff.")
    wal_mode: bool = Field(default=True, description="Enable Write-Ahead Logging for concurrent consumers.")
    busy_timeout_ms: int = Field(default=5000, description="How long a writer waits for the database lock.")

    @field_validator("db_path", mode="before")
    @classmethod
    def ensure_db_directory(cls, v: Any) -> Path:
        """Ensure database directory exists."""
        path = Path(v) if not isinstance(v, Path) else v
        path.parent.mkdir(parents=True, exist_ok=True)
        return path


class ProviderCacheConfig(BaseModel):
    """Configuration for the provider lookup cache."""

    enabled: bool = True
    db_path: Path = Field(
        default_factory=lambda: Path.home() / ".lookupguard" / "provider_cache.db",
        description="SQLite database file for cached provider lookups",
    )
    ttl_days: int = Field(default=30, ge=0, description="Entries older than this are treated as misses.")

    @field_validator("db_path", mode="before")
    @classmethod
    def ensure_db_directory(cls, v: Any) -> Path:
        path = Path(v) if not isinstance(v, Path) else v
        path.parent.mkdir(parents=True, exist_ok=True)
        return path


class LookupConfig(BaseModel):
    """Provider lookup orchestration settings."""

    url_template: str = Field(
        default="https://www.porting.co.za/PublicWebsite/crdb?msisdn={msisdn}",
        description="Lookup URL; {msisdn} is replaced with the cleaned number.",
    )
    result_selector: str = Field(default="span.p1", description="Element holding the provider sentence.")
    navigation_timeout_ms: int = Field(default=15000, description="Page navigation timeout.")
    selector_timeout_ms: int = Field(default=5000, description="Wait for the result element.")
    inter_lookup_delay_ms: int = Field(default=500, ge=0, description="Pause between lookups in one batch.")
    headless: bool = True
    restart_on_captcha: bool = Field(default=True, description="Reopen the browser and resubmit an aborted batch.")


class MonitoringConfig(BaseModel):
    """Configuration for logging and metrics."""

    log_level: str = Field(default="INFO", description="Logging level (e.g., DEBUG, INFO, WARNING).")
    log_file: str | None = Field(
        default=None,
        description="Path to log file. If None, logs to console.",
    )
    prometheus_port: int | None = Field(
        default=None,
        description="Port for Prometheus metrics exporter. None to disable.",
    )

    @field_validator("log_file", mode="before")
    @classmethod
    def create_parent_dir(cls, v: str | Path | None) -> str | None:
        if v is None:
            return None
        path = Path(v)
        path.parent.mkdir(parents=True, exist_ok=True)
        return str(path)


# --- Main Configuration Class ---


class Config(BaseSettings):
    project_name: str = "lookupguard"
    batch: BatchConfig = Field(default_factory=BatchConfig)
    detection: DetectionConfig = Field(default_factory=DetectionConfig)
    retry: RetryQueueConfig = Field(default_factory=RetryQueueConfig)
    cache: ProviderCacheConfig = Field(default_factory=ProviderCacheConfig)
    lookup: LookupConfig = Field(default_factory=LookupConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = SettingsConfigDict(env_prefix="LOOKUPGUARD_", env_nested_delimiter="__", case_sensitive=False)

    @classmethod
    def from_yaml(cls, path: Path) -> Config:
        log.debug("Loading configuration from YAML file: %s", path)
        if not path.is_file():
            raise FileNotFoundError(f"Configuration file not found or is not a file: {path}")
        with open(path, "r", encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f)
        if not yaml_data:
            log.warning("Configuration file is empty: %s. Using default settings.", path)
            return cls.model_validate({})
        return cls.model_validate(yaml_data)


def find_config_file() -> Optional[Path]:
    current_dir = Path.cwd()
    paths_to_check = [
        current_dir / "lookupguard.yaml",
        current_dir / "lookupguard.yml",
        current_dir / "config.yaml",
        current_dir / "config.yml",
    ]
    for path in paths_to_check:
        if path.exists():
            return path
    return None
