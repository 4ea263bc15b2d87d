"""Process-wide token bucket shared by every provider request."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from .config import get_settings


logger = logging.getLogger(__name__)


class RateLimiter:
    """Thread-safe token bucket refilled at ``calls_per_minute``."""

    def __init__(
        self,
        calls_per_minute: float = 75.0,
        burst: int = 5,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if calls_per_minute <= 0:
            raise ValueError("calls_per_minute must be positive")
        self.rate = calls_per_minute / 60.0
        self.burst = max(1, int(burst))
        self._tokens = float(self.burst)
        self._clock = clock
        self._sleep = sleep
        self._last = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last)
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate)
        self._last = now

    def try_acquire(self) -> bool:
        with self._lock:
            self._refill()
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return True
            return False

    def acquire(self, timeout: float | None = None) -> bool:
        """Block until a token is available. Returns False if ``timeout`` elapses first."""
        start = self._clock()
        while True:
            with self._lock:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return True
                wait = (1.0 - self._tokens) / self.rate
            if timeout is not None and self._clock() - start + wait > timeout:
                logger.warning("Rate limiter timed out after %.1fs", timeout)
                return False
            logger.debug("Rate limiter waiting %.2fs", wait)
            self._sleep(min(wait, 0.5))

    @property
    def available(self) -> float:
        with self._lock:
            self._refill()
            return self._tokens


_limiter: RateLimiter | None = None
_limiter_lock = threading.Lock()


def get_rate_limiter() -> RateLimiter:
    global _limiter
    with _limiter_lock:
        if _limiter is None:
            settings = get_settings()
            _limiter = RateLimiter(settings.provider_calls_per_minute, settings.provider_burst)
        return _limiter


def reset_rate_limiter() -> None:
    global _limiter
    with _limiter_lock:
        _limiter = None


__all__ = ["RateLimiter", "get_rate_limiter", "reset_rate_limiter"]
