"""
Per-key request throttling for OTP delivery.

The limiter is an ordinary object owned by the application container, so every
app instance (and every test) gets its own counters. Stale windows are dropped
by ``sweep()``, which the app lifespan runs periodically.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict

import structlog

log = structlog.get_logger(__name__)


@dataclass
class _Window:
    count: int
    last_request: float


class OtpRateLimiter:
    def __init__(self, window_seconds: float, max_requests: int, clock: Callable[[], float] = time.monotonic):
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.clock = clock
        self._windows: Dict[str, _Window] = {}

    def __len__(self) -> int:
        return len(self._windows)

    def hit(self, key: str) -> bool:
        """Record a request for ``key``; False when the key is over its limit."""
        now = self.clock()
        key = key.lower()
        window = self._windows.get(key)
        if window is None or now - window.last_request > self.window_seconds:
            self._windows[key] = _Window(count=1, last_request=now)
            return True
        if window.count >= self.max_requests:
            return False
        window.count += 1
        window.last_request = now
        return True

    def sweep(self) -> int:
        now = self.clock()
        stale = [key for key, w in self._windows.items() if now - w.last_request > self.window_seconds]
        for key in stale:
            del self._windows[key]
        return len(stale)


async def sweep_periodically(limiter: OtpRateLimiter, interval_seconds: float) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        removed = limiter.sweep()
        if removed:
            log.debug("rate_limit_sweep", removed=removed, remaining=len(limiter))
