"""
unistore test configuration.

This module provides pytest fixtures for setting up test environments, including:
- Isolation from UNISTORE_* environment variables
- Fresh configuration and logging state per test
- Temporary storage roots
"""

import os
import shutil
import tempfile

import pytest

from unistore.config.settings import ConfigManager, StorageConfig
from unistore.logging.setup import reset_logging


# Session-level fixture to clear environment variables before any tests run
@pytest.fixture(scope="session", autouse=True)
def clear_env_vars():
    """
    Clear UNISTORE environment variables at session start.

    This ensures that variables exported in the developer's shell or loaded
    from .env files don't leak into the tests.
    """
    original_values = {
        name: value for name, value in os.environ.items()
        if name.upper().startswith("UNISTORE_")
    }
    for name in original_values:
        del os.environ[name]

    yield

    # Restore original values after all tests complete
    for name, value in original_values.items():
        os.environ[name] = value


@pytest.fixture(autouse=True)
def reset_state():
    """Reset the config and logging singletons around each test."""
    ConfigManager.reset_instance()
    reset_logging()
    yield
    ConfigManager.reset_instance()
    reset_logging()


@pytest.fixture
def temp_storage_dir():
    """Create temporary storage directory."""
    temp_dir = tempfile.mkdtemp()
    yield temp_dir
    # Stored files are read-only; make them writable so cleanup succeeds
    for directory, _, files in os.walk(temp_dir):
        for name in files:
            path = os.path.join(directory, name)
            if not os.path.islink(path):
                os.chmod(path, 0o644)
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def local_config(temp_storage_dir):
    """Local storage configuration rooted in a temporary directory."""
    return StorageConfig(
        local_path=os.path.join(temp_storage_dir, "uploads"),
        base_url="http://files.test/uploads",
    )
