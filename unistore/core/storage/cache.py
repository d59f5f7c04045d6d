"""LRU cache of driver instances keyed by configuration."""

from __future__ import annotations

import hashlib
import json
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

from unistore.config.settings import SECRET_FIELDS, StorageConfig
from unistore.logging.setup import get_logger

from .backend import StorageDriver

logger = get_logger(__name__)

DEFAULT_CACHE_CAPACITY = 100


@dataclass
class DriverCacheEntry:
    """A cached driver and when it was last handed out."""
    key: str
    driver: StorageDriver
    last_access: float


def _digest(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class DriverCache:
    """
    Keeps one driver per distinct configuration, evicting the least
    recently used entry when full.

    Entries are ordered by last access; ``get`` on a cached configuration
    moves it to the most-recent end. All mutations happen under one lock so
    lookup, insert and eviction are a single critical section.
    """

    def __init__(
        self,
        factory: Callable[[StorageConfig], StorageDriver],
        capacity: int = DEFAULT_CACHE_CAPACITY,
        clock: Callable[[], float] = time.monotonic,
    ):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._factory = factory
        self.capacity = capacity
        self._clock = clock
        self._entries: OrderedDict[str, DriverCacheEntry] = OrderedDict()
        self._lock = threading.RLock()

    @staticmethod
    def key_for(config: StorageConfig) -> str:
        """
        Deterministic key covering every configuration field.

        Credentials are hashed before they enter the key. Unset fields are
        serialized as null, so an empty string and an omitted value give
        different keys.
        """
        fields = config.model_dump(mode="json")
        for name in SECRET_FIELDS:
            if fields.get(name) is not None:
                fields[name] = _digest(fields[name])
        return _digest(json.dumps(fields, sort_keys=True))

    def get(self, config: StorageConfig) -> StorageDriver:
        """Return the cached driver for a configuration, creating it on a miss."""
        key = self.key_for(config)
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                entry.last_access = self._clock()
                self._entries.move_to_end(key)
                return entry.driver

            driver = self._factory(config)
            self._entries[key] = DriverCacheEntry(
                key=key, driver=driver, last_access=self._clock())
            logger.debug(f"Created {config.driver.value} driver ({key[:12]})")

            while len(self._entries) > self.capacity:
                evicted_key, _ = self._entries.popitem(last=False)
                logger.debug(f"Evicted driver {evicted_key[:12]} from cache")
            return driver

    def contains(self, config: StorageConfig) -> bool:
        with self._lock:
            return self.key_for(config) in self._entries

    def remove(self, config: StorageConfig) -> bool:
        """Drop the driver cached for a configuration; True if one existed."""
        with self._lock:
            return self._entries.pop(self.key_for(config), None) is not None

    def clear(self):
        with self._lock:
            self._entries.clear()

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def __len__(self) -> int:
        return self.size()
