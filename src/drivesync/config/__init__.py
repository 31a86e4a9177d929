"""Configuration package for drive sync."""

from .settings import (
    GoogleDriveSettings,
    SyncSettings,
    LoggingSettings,
    StatusServerSettings,
    AppSettings,
    get_settings
)

from .schema import (
    ConflictPolicy,
    SyncConfig,
    ConnectorConfig,
    MIN_CONCURRENCY,
    MAX_CONCURRENCY
)

from .loader import (
    ConfigLoader,
    ConfigurationError,
    load_config_from_env
)

__all__ = [
    "GoogleDriveSettings",
    "SyncSettings",
    "LoggingSettings",
    "StatusServerSettings",
    "AppSettings",
    "get_settings",

    "ConflictPolicy",
    "SyncConfig",
    "ConnectorConfig",
    "MIN_CONCURRENCY",
    "MAX_CONCURRENCY",

    "ConfigLoader",
    "ConfigurationError",
    "load_config_from_env"
]
