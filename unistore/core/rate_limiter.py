"""
Fixed-window rate limiting.

Each key gets a window of ``window_ms`` milliseconds holding a request
count. Counters live in memory only and are lost on restart.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Dict

from unistore.config.settings import RateLimitSettings

DEFAULT_KEY = "default"


@dataclass
class RateWindow:
    """Request count for one key within the current window."""
    window_start: float  # Clock reading when the window opened (seconds)
    count: int = 0


@dataclass(frozen=True)
class RateLimitStatus:
    """Snapshot of a key's remaining quota."""
    remaining: int
    reset_in_ms: int

    def to_dict(self) -> dict[str, int]:
        return {"remaining": self.remaining, "reset_in_ms": self.reset_in_ms}


class RateLimiter:
    """
    Counts requests per key in fixed windows.

    A window opens on the first request for a key and resets once more than
    ``window_ms`` has elapsed since it opened.
    """

    def __init__(
        self,
        max_requests: int,
        window_ms: int = 60_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_ms < 1:
            raise ValueError("window_ms must be at least 1")
        self.max_requests = max_requests
        self.window_ms = window_ms
        self._clock = clock
        self._windows: Dict[str, RateWindow] = {}
        self._cleanup_interval = max(window_ms / 1000.0, 60.0)
        self._last_cleanup = clock()

    @classmethod
    def from_settings(cls, settings: RateLimitSettings) -> RateLimiter:
        return cls(settings.max_requests, settings.window_ms)

    @property
    def _window_seconds(self) -> float:
        return self.window_ms / 1000.0

    def _is_expired(self, window: RateWindow, now: float) -> bool:
        return now > window.window_start + self._window_seconds

    def _current_window(self, key: str, now: float) -> RateWindow:
        if now - self._last_cleanup > self._cleanup_interval:
            self._cleanup_expired(now)
            self._last_cleanup = now

        window = self._windows.get(key)
        if window is None or self._is_expired(window, now):
            window = RateWindow(window_start=now)
            self._windows[key] = window
        return window

    def _cleanup_expired(self, now: float):
        """Drop windows that have expired to bound memory use."""
        expired = [key for key, window in self._windows.items()
                   if self._is_expired(window, now)]
        for key in expired:
            del self._windows[key]

    def try_acquire(self, key: str = DEFAULT_KEY) -> bool:
        """
        Record a request for a key if quota remains.

        Returns:
            True if the request is allowed, False if the limit is reached
        """
        window = self._current_window(key, self._clock())
        if window.count >= self.max_requests:
            return False
        window.count += 1
        return True

    def status(self, key: str = DEFAULT_KEY) -> RateLimitStatus:
        """Remaining requests and time until the key's window resets."""
        now = self._clock()
        window = self._windows.get(key)
        if window is None or self._is_expired(window, now):
            return RateLimitStatus(remaining=self.max_requests, reset_in_ms=0)

        reset_at = window.window_start + self._window_seconds
        return RateLimitStatus(
            remaining=max(0, self.max_requests - window.count),
            reset_in_ms=max(0, int((reset_at - now) * 1000)),
        )

    def reset(self, key: str | None = None):
        """Forget one key's window, or all windows when key is None."""
        if key is None:
            self._windows.clear()
        else:
            self._windows.pop(key, None)
