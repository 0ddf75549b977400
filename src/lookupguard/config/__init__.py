"""Configuration models for lookupguard."""

from .config import (
    BatchConfig,
    Config,
    DetectionConfig,
    LookupConfig,
    MonitoringConfig,
    ProviderCacheConfig,
    RetryQueueConfig,
    find_config_file,
)

__all__ = [
    "BatchConfig",
    "Config",
    "DetectionConfig",
    "LookupConfig",
    "MonitoringConfig",
    "ProviderCacheConfig",
    "RetryQueueConfig",
    "find_config_file",
]
