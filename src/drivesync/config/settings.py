"""Application configuration settings."""

from typing import Optional, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class GoogleDriveSettings(BaseSettings):
    """Google Drive API configuration."""

    model_config = SettingsConfigDict(env_prefix="GOOGLE_")

    credentials_path: str = Field(default="./secrets/credentials.json")
    token_path: str = Field(default="./secrets/token.json")
    application_name: str = Field(default="Drive Sync")
    scopes: List[str] = Field(default=["https://www.googleapis.com/auth/drive"])


class SyncSettings(BaseSettings):
    """Defaults for the sync engine, overridable per configuration file."""

    model_config = SettingsConfigDict(env_prefix="SYNC_")

    config_path: Optional[str] = Field(default=None)
    local_path: Optional[str] = Field(default=None)
    drive_folder_id: Optional[str] = Field(default=None)
    drive_folder_path: Optional[str] = Field(default=None)
    conflict_policy: str = Field(default="keep-both")
    max_concurrent_operations: int = Field(default=3)
    poll_interval_seconds: int = Field(default=30)


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(env_prefix="LOG_")

    level: str = Field(default="INFO")
    format: str = Field(default="console")
    file_path: Optional[str] = Field(default="./logs/drivesync.log")


class StatusServerSettings(BaseSettings):
    """Health and status HTTP endpoint configuration."""

    model_config = SettingsConfigDict(env_prefix="STATUS_")

    enabled: bool = Field(default=True)
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=9002)


class AppSettings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="allow",
    )

    name: str = Field(default="Drive Sync")
    version: str = Field(default="1.0.0")
    environment: str = Field(default="development")

    google_drive: GoogleDriveSettings = GoogleDriveSettings()
    sync: SyncSettings = SyncSettings()
    logging: LoggingSettings = LoggingSettings()
    status_server: StatusServerSettings = StatusServerSettings()


# Global settings instance
settings = AppSettings()


def get_settings() -> AppSettings:
    """Get application settings."""
    return settings
