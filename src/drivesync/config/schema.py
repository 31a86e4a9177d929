"""Configuration schema definitions for the sync engine."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class ConflictPolicy(str, Enum):
    """How a genuine content conflict is resolved."""
    KEEP_BOTH = "keep-both"
    LOCAL_WINS = "local-wins"
    DRIVE_WINS = "drive-wins"
    ASK = "ask"


MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 10


class SyncConfig(BaseModel):
    """Configuration for one local root mirrored to one Drive folder."""

    # Replicas
    local_path: str = Field(..., description="Local directory to synchronize")
    drive_folder_id: Optional[str] = Field(None, description="Target Drive folder ID")
    drive_folder_path: Optional[str] = Field(
        None, description="Drive folder path from My Drive root, created if missing"
    )

    # Conflict handling
    conflict_policy: ConflictPolicy = Field(default=ConflictPolicy.KEEP_BOTH)
    same_file_tolerance_seconds: float = Field(
        default=5.0, description="Untracked files with mtimes this close are treated as the same file"
    )
    skip_snooze_seconds: float = Field(
        default=600.0, description="How long a skipped 'ask' conflict is not re-asked"
    )
    ask_timeout_seconds: Optional[float] = Field(
        None, description="Treat an unanswered 'ask' as skip after this many seconds"
    )
    local_authoritative: bool = Field(
        default=False, description="Delete remote files that have no local counterpart"
    )

    # Scheduling and concurrency
    max_concurrent_operations: int = Field(default=3)
    poll_interval_seconds: float = Field(default=30.0)
    watcher_debounce_seconds: float = Field(default=2.0)

    # Retry
    retry_attempts: int = Field(default=3)
    retry_base_delay_seconds: float = Field(default=1.0)

    # Resource bounds
    batch_size: int = Field(default=50)
    max_loaded_chunks: int = Field(default=20)
    reclaim_memory: bool = Field(default=True)
    large_file_threshold_bytes: int = Field(default=5 * 1024 * 1024)

    # Persisted state
    state_dir_name: str = Field(default=".gdrive-sync")

    @field_validator('max_concurrent_operations')
    @classmethod
    def validate_concurrency(cls, v):
        if not MIN_CONCURRENCY <= v <= MAX_CONCURRENCY:
            raise ValueError(
                f"max_concurrent_operations must be between {MIN_CONCURRENCY} and {MAX_CONCURRENCY}"
            )
        return v

    @field_validator('poll_interval_seconds', 'watcher_debounce_seconds', 'retry_base_delay_seconds')
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("Value must be positive")
        return v

    @field_validator('retry_attempts', 'batch_size', 'max_loaded_chunks')
    @classmethod
    def validate_at_least_one(cls, v):
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @field_validator('state_dir_name')
    @classmethod
    def validate_state_dir_name(cls, v):
        if not v or "/" in v or "\\" in v:
            raise ValueError("state_dir_name must be a single directory name")
        return v

    @model_validator(mode='after')
    def validate_remote_target(self):
        if not self.drive_folder_id and not self.drive_folder_path:
            raise ValueError("Either drive_folder_id or drive_folder_path is required")
        return self


class ConnectorConfig(BaseModel):
    """Root configuration for the sync application."""

    version: str = Field(default="1.0.0", description="Configuration version")
    created_at: datetime = Field(default_factory=datetime.now)
    environment: str = Field(default="development")

    sync: SyncConfig

    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="console", description="Logging format (json, console)")

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @field_validator('log_format')
    @classmethod
    def validate_log_format(cls, v):
        if v not in ('json', 'console'):
            raise ValueError("Log format must be 'json' or 'console'")
        return v

    @field_validator('environment')
    @classmethod
    def validate_environment(cls, v):
        valid_envs = ['development', 'staging', 'production']
        if v.lower() not in valid_envs:
            raise ValueError(f"Environment must be one of: {valid_envs}")
        return v.lower()
