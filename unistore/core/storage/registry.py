"""Maps storage driver kinds to factories that build driver instances."""

from __future__ import annotations

from typing import Callable, Dict

from unistore.config.settings import StorageConfig, StorageDriverKind
from unistore.core.errors import ConfigurationError

from .backend import StorageDriver
from .local_backend import LocalStorageEngine

DriverFactory = Callable[[StorageConfig], StorageDriver]


class DriverRegistry:
    """
    Registry of driver factories keyed by StorageDriverKind.

    Only the local engine ships with the package. Remote object-store
    drivers are registered by the application that provides them.
    """

    def __init__(self, include_local: bool = True):
        self._factories: Dict[StorageDriverKind, DriverFactory] = {}
        if include_local:
            self.register(StorageDriverKind.LOCAL, LocalStorageEngine)

    def register(self, kind: StorageDriverKind | str, factory: DriverFactory):
        """Register (or replace) the factory for a driver kind."""
        self._factories[StorageDriverKind(kind)] = factory

    def unregister(self, kind: StorageDriverKind | str) -> bool:
        return self._factories.pop(StorageDriverKind(kind), None) is not None

    def is_registered(self, kind: StorageDriverKind | str) -> bool:
        return StorageDriverKind(kind) in self._factories

    def available(self) -> list[str]:
        """Kinds that can currently be created, in declaration order."""
        return [kind.value for kind in StorageDriverKind
                if kind in self._factories]

    def create(self, config: StorageConfig) -> StorageDriver:
        """
        Build a driver for a configuration.

        Raises:
            ConfigurationError: If no factory is registered for the kind
        """
        factory = self._factories.get(config.driver)
        if factory is None:
            raise ConfigurationError(
                f"No driver registered for storage kind '{config.driver.value}'")
        return factory(config)
