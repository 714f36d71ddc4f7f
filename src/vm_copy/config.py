"""
Configuration management for VM copy operations.

This module handles loading and validating configuration from files and environment variables.
"""

import os
import yaml
from typing import Optional
from pydantic import BaseModel, Field, field_validator, ConfigDict

from .exceptions import ConfigurationError
from .logging import logger


DEFAULT_CONFIG_PATHS = [
    "~/.config/vm-copy/config.yaml",
    "/etc/vm-copy/config.yaml",
    "config.yaml",
]


class AppConfig(BaseModel):
    """Application configuration with Pydantic validation.

    Configuration can be loaded from:
    1. Explicit config file path
    2. Default config file locations
    3. Environment variables (highest priority)

    Environment variables:
    - VM_COPY_AZ_PATH: Azure CLI executable
    - VM_COPY_AZCOPY_PATH: azcopy executable
    - VM_COPY_LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    - VM_COPY_COMMAND_TIMEOUT: Timeout for a single az command in seconds
    - VM_COPY_RETRY_ATTEMPTS: Attempts for transient command failures
    - VM_COPY_POLL_INTERVAL: Seconds between existence/copy polls
    - VM_COPY_VM_WAIT_TIMEOUT: Maximum wait for the destination VM in seconds
    - VM_COPY_SAS_DURATION: Validity of the snapshot read URL in seconds
    - VM_COPY_STAGING_DIR: Local directory for buffered transfers
    - VM_COPY_TRANSACTION_LOG_DIR: Directory for transaction logs
    """

    model_config = ConfigDict(extra="forbid")

    az_path: str = Field(default="az", min_length=1)
    azcopy_path: str = Field(default="azcopy", min_length=1)
    log_level: str = Field(default="INFO", description="Logging level")

    command_timeout: int = Field(
        default=1800, gt=0, description="Timeout for one az command in seconds"
    )
    retry_attempts: int = Field(default=5, gt=0, le=20)
    retry_min_wait: float = Field(default=2.0, ge=0)
    retry_max_wait: float = Field(default=60.0, gt=0)

    poll_interval: float = Field(default=15.0, gt=0)
    vm_wait_timeout: int = Field(default=1800, gt=0)
    copy_wait_timeout: int = Field(default=6 * 3600, gt=0)

    # Cross-tenant transfer
    sas_duration_seconds: int = Field(default=4 * 3600, ge=600)
    azcopy_concurrency: int = Field(default=256, gt=0)
    chunk_size_mb: int = Field(default=4, gt=0, le=4)
    chunk_retries: int = Field(default=5, gt=0)
    staging_dir: Optional[str] = None
    staging_storage_sku: str = Field(default="Standard_LRS")

    transaction_log_dir: str = Field(default="/tmp")
    stop_after_create: bool = True
    enable_diagnostics: bool = True
    rollback_on_failure: bool = False

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        v = v.upper()
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return v


class ConfigLoader:
    """Loads and validates configuration."""

    def __init__(self) -> None:
        self.logger = logger

    def load_config(self, config_path: Optional[str] = None) -> AppConfig:
        """
        Load configuration from file and environment variables.

        Priority (highest to lowest):
        1. Environment variables
        2. Config file (explicit path or default locations)
        3. Default values

        Args:
            config_path: Path to configuration file. If None, looks in default locations.

        Returns:
            AppConfig: Loaded configuration
        """
        if config_path:
            config_data = self._load_data_from_file(config_path)
        else:
            config_data = {}
            for path in DEFAULT_CONFIG_PATHS:
                path = os.path.expanduser(path)
                if os.path.exists(path):
                    self.logger.info(f"Loading configuration from {path}", path=path)
                    config_data = self._load_data_from_file(path)
                    break

            if not config_data:
                self.logger.debug(
                    "No configuration file found, using defaults and environment variables"
                )

        config_data = self._apply_env_overrides(config_data)

        try:
            return AppConfig(**config_data)
        except ValueError as e:
            self.logger.error(f"Invalid configuration: {e}")
            raise ConfigurationError(f"Invalid configuration: {e}")

    def _apply_env_overrides(self, config_data: dict) -> dict:
        """Apply environment variable overrides to config data."""
        env_mappings = {
            "VM_COPY_AZ_PATH": "az_path",
            "VM_COPY_AZCOPY_PATH": "azcopy_path",
            "VM_COPY_LOG_LEVEL": "log_level",
            "VM_COPY_COMMAND_TIMEOUT": ("command_timeout", int),
            "VM_COPY_RETRY_ATTEMPTS": ("retry_attempts", int),
            "VM_COPY_POLL_INTERVAL": ("poll_interval", float),
            "VM_COPY_VM_WAIT_TIMEOUT": ("vm_wait_timeout", int),
            "VM_COPY_SAS_DURATION": ("sas_duration_seconds", int),
            "VM_COPY_STAGING_DIR": "staging_dir",
            "VM_COPY_TRANSACTION_LOG_DIR": "transaction_log_dir",
        }

        for env_var, mapping in env_mappings.items():
            env_value = os.getenv(env_var)
            if env_value is None:
                continue
            if isinstance(mapping, tuple):
                config_key, converter = mapping
                try:
                    config_data[config_key] = converter(env_value)
                    self.logger.debug(f"Applied environment override: {env_var}={env_value}")
                except (ValueError, TypeError) as e:
                    self.logger.warning(
                        f"Invalid value for {env_var}: {env_value}, ignoring. Error: {e}"
                    )
            else:
                config_data[mapping] = env_value
                self.logger.debug(f"Applied environment override: {env_var}={env_value}")

        return config_data

    def _load_data_from_file(self, path: str) -> dict:
        """Load configuration data from a specific file."""
        try:
            with open(os.path.expanduser(path), "r") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            self.logger.error(f"Failed to parse configuration file {path}: {e}", path=path)
            raise ConfigurationError(f"Failed to parse configuration file: {e}")
        except OSError as e:
            self.logger.error(f"Failed to load configuration from {path}: {e}", path=path)
            raise ConfigurationError(f"Failed to load configuration: {e}")

        if data is None:
            return {}

        if not isinstance(data, dict):
            raise ConfigurationError(f"Invalid configuration format in {path}")

        return data


config_loader = ConfigLoader()
