"""Configuration loader for JSON/YAML files and environment variables."""

import os
import json
from pathlib import Path
from typing import Dict, Any, Union

import yaml
from pydantic import ValidationError

from .schema import ConnectorConfig
from .settings import get_settings
from ..utils.logging import get_logger


class ConfigurationError(Exception):
    """Raised when configuration loading fails."""
    pass


class ConfigLoader:
    """Loads and validates configuration from various sources."""

    def __init__(self):
        self.logger = get_logger(self.__class__.__name__)

    def load_from_file(self, file_path: Union[str, Path]) -> ConnectorConfig:
        """Load configuration from JSON or YAML file.

        Args:
            file_path: Path to configuration file

        Returns:
            Validated ConnectorConfig object

        Raises:
            ConfigurationError: If file cannot be loaded or validated
        """
        file_path = Path(file_path)

        if not file_path.exists():
            raise ConfigurationError(f"Configuration file not found: {file_path}")

        self.logger.info("Loading configuration from file", file_path=str(file_path))

        suffix = file_path.suffix.lower()
        if suffix not in ('.yaml', '.yml', '.json'):
            raise ConfigurationError(f"Unsupported file format: {file_path.suffix}")

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                if suffix == '.json':
                    data = json.load(f)
                else:
                    data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML format: {e}")
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON format: {e}")
        except OSError as e:
            raise ConfigurationError(f"Failed to read configuration: {e}")

        if not isinstance(data, dict):
            raise ConfigurationError("Configuration root must be a mapping")

        return self.load_from_dict(data)

    def load_from_dict(self, data: Dict[str, Any]) -> ConnectorConfig:
        """Load configuration from dictionary.

        Args:
            data: Configuration data as dictionary

        Returns:
            Validated ConnectorConfig object
        """
        data = self._apply_env_overrides(data)

        try:
            config = ConnectorConfig(**data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}")

        self.logger.info(
            "Configuration loaded",
            local_path=config.sync.local_path,
            conflict_policy=config.sync.conflict_policy.value,
            environment=config.environment
        )

        return config

    def _apply_env_overrides(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides to configuration data.

        Environment variables use the format DRIVESYNC_<KEY>, plus LOG_LEVEL
        and LOG_FORMAT for the logging section.
        """
        env_overrides: Dict[str, Any] = {}

        if os.getenv('LOG_LEVEL'):
            env_overrides['log_level'] = os.getenv('LOG_LEVEL')

        if os.getenv('LOG_FORMAT'):
            env_overrides['log_format'] = os.getenv('LOG_FORMAT')

        if os.getenv('DRIVESYNC_ENVIRONMENT'):
            env_overrides['environment'] = os.getenv('DRIVESYNC_ENVIRONMENT')

        sync_overrides: Dict[str, Any] = {}

        if os.getenv('DRIVESYNC_LOCAL_PATH'):
            sync_overrides['local_path'] = os.getenv('DRIVESYNC_LOCAL_PATH')

        if os.getenv('DRIVESYNC_FOLDER_ID'):
            sync_overrides['drive_folder_id'] = os.getenv('DRIVESYNC_FOLDER_ID')

        if os.getenv('DRIVESYNC_CONFLICT_POLICY'):
            sync_overrides['conflict_policy'] = os.getenv('DRIVESYNC_CONFLICT_POLICY')

        if os.getenv('DRIVESYNC_MAX_CONCURRENT'):
            try:
                sync_overrides['max_concurrent_operations'] = int(os.getenv('DRIVESYNC_MAX_CONCURRENT'))
            except ValueError:
                self.logger.warning("Invalid DRIVESYNC_MAX_CONCURRENT value, ignoring")

        if os.getenv('DRIVESYNC_POLL_INTERVAL'):
            try:
                sync_overrides['poll_interval_seconds'] = float(os.getenv('DRIVESYNC_POLL_INTERVAL'))
            except ValueError:
                self.logger.warning("Invalid DRIVESYNC_POLL_INTERVAL value, ignoring")

        if sync_overrides:
            env_overrides['sync'] = {**data.get('sync', {}), **sync_overrides}

        if env_overrides:
            self.logger.info("Applied environment variable overrides", overrides=list(env_overrides.keys()))
            data = {**data, **env_overrides}

        return data


def load_config_from_env() -> ConnectorConfig:
    """Load configuration from environment variables and default files.

    Looks for configuration files in this order:
    1. DRIVESYNC_CONFIG_FILE environment variable (or SYNC_CONFIG_PATH setting)
    2. ./config/drivesync.yaml, ./config/drivesync.yml, ./config/drivesync.json
    3. ./drivesync.yaml, ./drivesync.yml, ./drivesync.json

    If no file is found, the configuration is built from the SYNC_* settings.
    """
    loader = ConfigLoader()
    logger = get_logger("load_config_from_env")
    settings = get_settings()

    config_file = os.getenv('DRIVESYNC_CONFIG_FILE') or settings.sync.config_path
    if config_file:
        if os.path.exists(config_file):
            return loader.load_from_file(config_file)
        logger.warning("Specified config file not found", file=config_file)

    possible_files = [
        './config/drivesync.yaml',
        './config/drivesync.yml',
        './config/drivesync.json',
        './drivesync.yaml',
        './drivesync.yml',
        './drivesync.json'
    ]

    for file_path in possible_files:
        if os.path.exists(file_path):
            logger.info("Found configuration file", file=file_path)
            return loader.load_from_file(file_path)

    logger.info("No configuration file found, using environment settings")
    sync_settings = settings.sync
    sync_data = {
        'local_path': sync_settings.local_path,
        'drive_folder_id': sync_settings.drive_folder_id,
        'drive_folder_path': sync_settings.drive_folder_path,
        'conflict_policy': sync_settings.conflict_policy,
        'max_concurrent_operations': sync_settings.max_concurrent_operations,
        'poll_interval_seconds': sync_settings.poll_interval_seconds,
    }
    if not sync_data['local_path']:
        raise ConfigurationError("No configuration file found and SYNC_LOCAL_PATH is not set")

    return loader.load_from_dict({
        'environment': settings.environment,
        'log_level': settings.logging.level,
        'log_format': settings.logging.format,
        'sync': sync_data,
    })
