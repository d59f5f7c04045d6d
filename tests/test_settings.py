"""
Tests for configuration management.

Tests cover:
- Storage configuration defaults, normalization and validation
- YAML loading with environment variable overrides
- ConfigManager access helpers
"""

import math

import pytest
import yaml
from pydantic import ValidationError

from unistore.config.settings import (
    MAX_PRESIGNED_URL_EXPIRY,
    AppSettings,
    StorageConfig,
    StorageDriverKind,
    get_config_manager,
    validate_storage_config,
)


@pytest.fixture
def valid_config():
    """Return a valid configuration dictionary."""
    return {
        "storage": {
            "driver": "local",
            "local_path": "/srv/uploads",
            "bucket_path": "/media/",
        },
        "rate_limit": {"max_requests": 50, "window_ms": 1000},
        "retry": {"max_attempts": 5},
        "max_concurrent": 4,
        "logging": {
            "version": 1,
            "disable_existing_loggers": False,
            "handlers": {
                "console": {"class": "logging.StreamHandler", "level": "INFO"}
            },
            "root": {"level": "INFO", "handlers": ["console"]},
        },
    }


@pytest.fixture
def config_file(tmp_path, valid_config):
    """Write the configuration to a temporary YAML file."""
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump(valid_config))
    return str(path)


class TestStorageConfig:
    """Test the storage configuration model."""

    def test_defaults(self):
        config = StorageConfig()
        assert config.driver is StorageDriverKind.LOCAL
        assert config.local_path == "public/uploads"
        assert config.presigned_url_expiry == 600
        assert config.max_file_size == 5 * 1024 ** 3

    def test_driver_from_string(self):
        assert StorageConfig(driver="gcs-presigned").driver is StorageDriverKind.GCS_PRESIGNED

    def test_unknown_driver(self):
        with pytest.raises(ValidationError):
            StorageConfig(driver="ftp")

    def test_frozen(self):
        config = StorageConfig()
        with pytest.raises(ValidationError):
            config.local_path = "elsewhere"

    @pytest.mark.parametrize("raw, expected", [
        ("/users/42/", "users/42"),
        ("", None),
        ("/", None),
        (None, None),
    ])
    def test_bucket_path_normalization(self, raw, expected):
        assert StorageConfig(bucket_path=raw).bucket_path == expected

    @pytest.mark.parametrize("expiry, expected", [
        (0.2, 1),
        (3600, 3600),
        (10 ** 9, MAX_PRESIGNED_URL_EXPIRY),
        (math.nan, 600),
    ])
    def test_url_expiry_is_clamped(self, expiry, expected):
        assert StorageConfig(presigned_url_expiry=expiry).url_expiry_seconds == expected

    def test_safe_dump_masks_secrets(self):
        config = StorageConfig(
            driver="azure", azure_container_name="files",
            azure_connection_string="DefaultEndpointsProtocol=https;AccountKey=abc")
        dumped = config.safe_dump()
        assert dumped["azure_connection_string"] == "***"
        assert dumped["azure_container_name"] == "files"
        assert dumped["aws_secret_key"] is None

    def test_driver_kind_helpers(self):
        assert StorageDriverKind.S3_PRESIGNED.is_presigned
        assert not StorageDriverKind.AZURE.is_presigned
        assert StorageDriverKind.AZURE_PRESIGNED.family == "azure"


class TestValidateStorageConfig:
    """Test per-driver configuration checks."""

    def test_local_is_valid(self):
        assert validate_storage_config(StorageConfig()) == []

    def test_s3_requirements(self):
        assert validate_storage_config(StorageConfig(driver="s3")) == [
            "S3 driver requires bucket_name",
            "S3 driver requires aws_region",
        ]
        assert validate_storage_config(StorageConfig(
            driver="s3-presigned", bucket_name="b", aws_region="eu-west-1")) == []

    def test_gcs_requirements(self):
        errors = validate_storage_config(StorageConfig(driver="gcs", bucket_name="b"))
        assert errors == ["GCS driver requires gcs_project_id"]

    def test_azure_managed_identity(self):
        config = StorageConfig(driver="azure", azure_container_name="c",
                               azure_account_name="acct")
        assert validate_storage_config(config) == []

    def test_azure_presigned_needs_signing_credentials(self):
        config = StorageConfig(driver="azure-presigned", azure_container_name="c",
                               azure_account_name="acct")
        errors = validate_storage_config(config)
        assert len(errors) == 1
        assert "to sign URLs" in errors[0]

    def test_azure_without_credentials(self):
        errors = validate_storage_config(StorageConfig(driver="azure"))
        assert len(errors) == 2

    @pytest.mark.parametrize("expiry", [0, -5, math.nan, MAX_PRESIGNED_URL_EXPIRY + 1])
    def test_bad_expiry(self, expiry):
        errors = validate_storage_config(StorageConfig(presigned_url_expiry=expiry))
        assert len(errors) == 1
        assert errors[0].startswith("presigned_url_expiry")

    @pytest.mark.parametrize("size, message", [
        (0, "max_file_size must be a positive number"),
        (6 * 1024 ** 4, "max_file_size cannot exceed 5TB"),
    ])
    def test_bad_max_file_size(self, size, message):
        assert validate_storage_config(StorageConfig(max_file_size=size)) == [message]


class TestConfigLoading:
    """Test configuration loading from files."""

    def test_from_yaml(self, config_file):
        settings = AppSettings.from_yaml(config_file)
        assert settings.storage.local_path == "/srv/uploads"
        assert settings.storage.bucket_path == "media"
        assert settings.rate_limit.max_requests == 50
        assert settings.retry.max_attempts == 5
        assert settings.retry.base_delay == 1.0
        assert settings.max_concurrent == 4

    def test_env_overrides_yaml(self, config_file, monkeypatch):
        monkeypatch.setenv("UNISTORE_STORAGE__LOCAL_PATH", "/from/env")
        monkeypatch.setenv("UNISTORE_MAX_CONCURRENT", "8")

        settings = AppSettings.from_yaml(config_file)

        assert settings.storage.local_path == "/from/env"
        assert settings.storage.bucket_path == "media"
        assert settings.max_concurrent == 8

    def test_load_from_env_var_path(self, config_file, monkeypatch):
        monkeypatch.setenv("UNISTORE_CONFIG_PATH", config_file)

        config_manager = get_config_manager()
        config_manager.load()

        assert config_manager.get_config_path() is None
        assert config_manager.storage_config.local_path == "/srv/uploads"

    def test_config_file_not_found(self):
        with pytest.raises(FileNotFoundError) as exc_info:
            get_config_manager().load("/nonexistent/path/config.yaml")
        assert "not found" in str(exc_info.value).lower()

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("invalid: yaml: content: [")
        with pytest.raises(ValueError) as exc_info:
            AppSettings.from_yaml(str(path))
        assert "yaml" in str(exc_info.value).lower()

    def test_invalid_driver(self, tmp_path, valid_config):
        valid_config["storage"]["driver"] = "ftp"
        path = tmp_path / "invalid.yaml"
        path.write_text(yaml.dump(valid_config))
        with pytest.raises(ValueError) as exc_info:
            AppSettings.from_yaml(str(path))
        assert "validation" in str(exc_info.value).lower()


class TestConfigAccess:
    """Test configuration value access methods."""

    def test_get_with_dot_notation(self, config_file):
        config_manager = get_config_manager()
        config_manager.load(config_file)

        assert config_manager.get("storage.driver") == "local"
        assert config_manager.get("rate_limit.window_ms") == 1000
        assert config_manager.get("nonexistent.key", "default") == "default"

    def test_singleton_pattern(self, config_file):
        first = get_config_manager()
        second = get_config_manager()
        assert first is second

        first.load(config_file)
        assert second.settings is first.settings
        assert second.get_config_path() == config_file

    def test_logging_config(self, config_file):
        config_manager = get_config_manager()
        config_manager.load(config_file)
        assert config_manager.logging_config["root"]["level"] == "INFO"
