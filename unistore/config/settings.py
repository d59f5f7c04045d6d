"""
Configuration for unistore using Pydantic Settings.

This module provides:
- Typed storage configuration for every supported backend kind
- Driver-specific validation with collected, human-readable errors
- Credential masking for logs and diagnostics
- YAML file loading with environment variable overrides

Environment variables use the format: UNISTORE_SECTION__KEY
Example: UNISTORE_STORAGE__DRIVER=s3
"""

from __future__ import annotations

import logging
import math
import os
from enum import Enum
from typing import Any, ClassVar

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


# Use basic logging during config initialization (before custom logger is
# set up)
_basic_logger = logging.getLogger(__name__)

DEFAULT_PRESIGNED_URL_EXPIRY = 600
MAX_PRESIGNED_URL_EXPIRY = 7 * 24 * 60 * 60
DEFAULT_MAX_FILE_SIZE = 5 * 1024 ** 3
MAX_FILE_SIZE_LIMIT = 5 * 1024 ** 4
DEFAULT_STREAMING_THRESHOLD = 100 * 1024 ** 2

MASKED_VALUE = "***"

SECRET_FIELDS = (
    "aws_access_key",
    "aws_secret_key",
    "gcs_credentials",
    "azure_connection_string",
    "azure_account_key",
)


class StorageDriverKind(str, Enum):
    """Supported storage backend kinds."""
    LOCAL = "local"
    S3 = "s3"
    S3_PRESIGNED = "s3-presigned"
    GCS = "gcs"
    GCS_PRESIGNED = "gcs-presigned"
    AZURE = "azure"
    AZURE_PRESIGNED = "azure-presigned"

    @property
    def is_presigned(self) -> bool:
        """True for kinds that hand out presigned URLs."""
        return self.value.endswith("-presigned")

    @property
    def family(self) -> str:
        """Provider family without the presigned suffix."""
        return self.value.split("-", 1)[0]


class StorageConfig(BaseModel):
    """Settings identifying one storage backend and its limits."""

    model_config = ConfigDict(frozen=True, use_enum_values=False)

    driver: StorageDriverKind = Field(
        default=StorageDriverKind.LOCAL,
        description="Storage backend kind")
    local_path: str = Field(
        default="public/uploads",
        description="Root directory for the local driver")
    base_url: str | None = Field(
        default=None,
        description="Public URL prefix for locally stored files")
    bucket_name: str | None = Field(
        default=None,
        description="Bucket or container name for remote drivers")
    bucket_path: str | None = Field(
        default=None,
        description="Default folder prefix for uploads")
    presigned_url_expiry: float = Field(
        default=DEFAULT_PRESIGNED_URL_EXPIRY,
        description="Presigned URL lifetime in seconds")
    max_file_size: int = Field(
        default=DEFAULT_MAX_FILE_SIZE,
        description="Maximum accepted file size in bytes")
    streaming_threshold: int = Field(
        default=DEFAULT_STREAMING_THRESHOLD,
        ge=0,
        description="Uploads larger than this are copied in chunks")

    aws_region: str | None = None
    aws_access_key: str | None = None
    aws_secret_key: str | None = None

    gcs_project_id: str | None = None
    gcs_credentials: str | None = None

    azure_connection_string: str | None = None
    azure_account_name: str | None = None
    azure_account_key: str | None = None
    azure_container_name: str | None = None

    @field_validator("bucket_path")
    @classmethod
    def _normalize_bucket_path(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip().strip("/")
        return value or None

    @property
    def url_expiry_seconds(self) -> int:
        """Presigned URL lifetime clamped to [1 second, 7 days]."""
        expiry = self.presigned_url_expiry
        if expiry is None or math.isnan(expiry):
            return DEFAULT_PRESIGNED_URL_EXPIRY
        return int(max(1, min(expiry, MAX_PRESIGNED_URL_EXPIRY)))

    def safe_dump(self) -> dict[str, Any]:
        """Return the configuration with credentials masked."""
        data = self.model_dump(mode="json")
        for name in SECRET_FIELDS:
            if data.get(name):
                data[name] = MASKED_VALUE
        return data


def validate_storage_config(config: StorageConfig) -> list[str]:
    """
    Check that a configuration has everything its driver needs.

    Args:
        config: Storage configuration to check

    Returns:
        List of error messages (empty when the configuration is usable)
    """
    errors: list[str] = []
    family = config.driver.family

    if family == "s3":
        if not config.bucket_name:
            errors.append("S3 driver requires bucket_name")
        if not config.aws_region:
            errors.append("S3 driver requires aws_region")
    elif family == "gcs":
        if not config.bucket_name:
            errors.append("GCS driver requires bucket_name")
        if not config.gcs_project_id:
            errors.append("GCS driver requires gcs_project_id")
    elif family == "azure":
        if not (config.azure_container_name or config.bucket_name):
            errors.append(
                "Azure driver requires azure_container_name or bucket_name")
        has_connection_string = bool(config.azure_connection_string)
        has_account_key = bool(
            config.azure_account_name and config.azure_account_key)
        has_managed_identity = bool(config.azure_account_name)
        if not (has_connection_string or has_account_key or has_managed_identity):
            errors.append(
                "Azure driver requires azure_connection_string, "
                "azure_account_name with azure_account_key, "
                "or azure_account_name for managed identity")
        elif (config.driver.is_presigned
              and not (has_connection_string or has_account_key)):
            errors.append(
                "Azure presigned driver requires azure_connection_string "
                "or azure_account_key to sign URLs")

    expiry = config.presigned_url_expiry
    if math.isnan(expiry) or expiry <= 0:
        errors.append("presigned_url_expiry must be a positive number")
    elif expiry > MAX_PRESIGNED_URL_EXPIRY:
        errors.append(
            f"presigned_url_expiry cannot exceed {MAX_PRESIGNED_URL_EXPIRY} "
            "seconds (7 days)")

    if config.max_file_size <= 0:
        errors.append("max_file_size must be a positive number")
    elif config.max_file_size > MAX_FILE_SIZE_LIMIT:
        errors.append("max_file_size cannot exceed 5TB")

    return errors


class RateLimitSettings(BaseModel):
    """Rate limit applied to presigned URL generation."""
    max_requests: int = Field(default=100, ge=1, le=1_000_000)
    window_ms: int = Field(default=60_000, ge=1)


class RetrySettings(BaseModel):
    """Retry policy for backend calls that raise."""
    max_attempts: int = Field(default=3, ge=1, le=20)
    base_delay: float = Field(
        default=1.0, ge=0, description="First retry delay in seconds")
    max_delay: float = Field(
        default=10.0, ge=0, description="Upper bound for a retry delay")
    exponential_backoff: bool = True


class LoggingSettings(BaseModel):
    """Logging configuration (raw dict for logging.config.dictConfig)."""
    version: int = Field(default=1)
    disable_existing_loggers: bool = Field(default=False)
    formatters: dict[str, Any] = Field(default_factory=dict)
    handlers: dict[str, Any] = Field(default_factory=dict)
    root: dict[str, Any] = Field(default_factory=dict)
    loggers: dict[str, Any] = Field(default_factory=dict)

    # Allow extra fields for logging config flexibility
    model_config = {'extra': 'allow'}


class AppSettings(BaseSettings):
    """
    Top-level settings: storage backend, limits and logging.

    Values come from (highest priority first) environment variables,
    the YAML file passed to from_yaml, and defaults.
    """

    storage: StorageConfig = Field(default_factory=StorageConfig)
    rate_limit: RateLimitSettings | None = None
    retry: RetrySettings = Field(default_factory=RetrySettings)
    max_concurrent: int = Field(default=10, ge=1, le=1000)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    model_config = SettingsConfigDict(
        env_prefix="UNISTORE_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # Class variable to temporarily store YAML data
    _temp_config_data: ClassVar[dict[str, Any] | None] = None

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """
        Customize the sources and their priority for loading settings.

        Priority (highest to lowest):
        1. Environment variables
        2. YAML file data (if loaded via from_yaml)
        3. Init arguments and defaults
        """
        class YamlSettingsSource(PydanticBaseSettingsSource):
            def get_field_value(
                    self, field: Any, field_name: str) -> tuple[Any, str, bool]:
                if cls._temp_config_data and field_name in cls._temp_config_data:
                    return cls._temp_config_data[field_name], field_name, False
                return None, field_name, False

            def __call__(self) -> dict[str, Any]:
                return cls._temp_config_data or {}

        return (
            env_settings,
            YamlSettingsSource(settings_cls),
            init_settings,
        )

    @classmethod
    def from_yaml(cls, config_path: str | None = None) -> AppSettings:
        """
        Load settings from a YAML file.

        Search order when no path is given:
        1. UNISTORE_CONFIG_PATH environment variable
        2. ./config.yaml
        3. unistore/config/config.yaml

        Args:
            config_path: Explicit path to config file (skips search if provided)

        Returns:
            AppSettings instance

        Raises:
            FileNotFoundError: If no config file is found
            ValueError: If the file is not valid YAML or fails validation
        """
        if config_path is None:
            config_path = cls._find_config_file()

        _basic_logger.info(f"Loading configuration from: {config_path}")

        try:
            with open(config_path, "r") as f:
                config_data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            _basic_logger.error(f"Configuration file not found: {config_path}")
            raise FileNotFoundError(
                f"Configuration file not found: {config_path}\n"
                f"Tried search paths: {cls._get_search_paths()}"
            )
        except yaml.YAMLError as e:
            _basic_logger.error(f"Invalid YAML in config file: {e}")
            raise ValueError(
                f"Invalid YAML in configuration file {config_path}: {e}")

        cls._temp_config_data = config_data
        try:
            settings = cls()
            _basic_logger.info(
                "Configuration loaded and validated successfully")
            return settings
        except ValidationError as e:
            _basic_logger.error(f"Configuration validation failed: {e}")
            raise ValueError(f"Configuration validation failed:\n{e}")
        finally:
            cls._temp_config_data = None

    @staticmethod
    def _get_search_paths() -> list[str]:
        return [
            os.getenv("UNISTORE_CONFIG_PATH", ""),
            "./config.yaml",
            os.path.join(os.path.dirname(__file__), "config.yaml"),
        ]

    @classmethod
    def _find_config_file(cls) -> str:
        search_paths = cls._get_search_paths()

        for path in search_paths:
            if path and os.path.isfile(path):
                _basic_logger.debug(f"Found config file at: {path}")
                return path

        error_msg = (
            "No configuration file found. Searched in:\n" +
            "\n".join(f"  - {p}" for p in search_paths if p) +
            "\n\nSet UNISTORE_CONFIG_PATH, place config.yaml in the "
            "working directory, or configure through UNISTORE_* variables"
        )
        _basic_logger.error(error_msg)
        raise FileNotFoundError(error_msg)


class ConfigManager:
    """Process-wide holder for loaded AppSettings."""

    _instance: ConfigManager | None = None
    _settings: AppSettings | None = None
    _config_path: str | None = None

    @classmethod
    def get_instance(cls) -> ConfigManager:
        """Get singleton instance of ConfigManager."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls):
        """Reset singleton instance (for testing)."""
        cls._instance = None
        cls._settings = None
        cls._config_path = None

    def load(self, config_path: str | None = None) -> dict[str, Any]:
        """
        Load configuration from file.

        Args:
            config_path: Optional path to config file

        Returns:
            Configuration as dictionary
        """
        if self._settings is not None and config_path is None:
            return self._settings.model_dump()

        self._config_path = config_path
        self._settings = AppSettings.from_yaml(config_path)
        return self._settings.model_dump()

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key: Config key in dot notation (e.g., "storage.driver")
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        value: Any = self.settings.model_dump()
        for part in key.split("."):
            if not isinstance(value, dict) or part not in value:
                return default
            value = value[part]
        return value

    @property
    def settings(self) -> AppSettings:
        if self._settings is None:
            self.load()
        return self._settings

    @property
    def storage_config(self) -> StorageConfig:
        return self.settings.storage

    @property
    def logging_config(self) -> dict[str, Any]:
        return self.settings.logging.model_dump()

    def get_config_path(self) -> str | None:
        """Get path to loaded configuration file."""
        return self._config_path


def get_config_manager() -> ConfigManager:
    """Get the ConfigManager singleton instance."""
    return ConfigManager.get_instance()


__all__ = [
    'AppSettings',
    'ConfigManager',
    'LoggingSettings',
    'RateLimitSettings',
    'RetrySettings',
    'StorageConfig',
    'StorageDriverKind',
    'get_config_manager',
    'validate_storage_config',
    'DEFAULT_MAX_FILE_SIZE',
    'DEFAULT_PRESIGNED_URL_EXPIRY',
    'MAX_PRESIGNED_URL_EXPIRY',
]
