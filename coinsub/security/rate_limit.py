"""In-memory sliding-window limiter for subscription creation requests."""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from threading import Lock
from typing import Callable

from coinsub.errors import CoinsubError


class RateLimitExceeded(CoinsubError):
    """Raised when a caller exceeds the configured request budget."""

    def __init__(self, key: str, retry_after: float) -> None:
        super().__init__(f"rate limit exceeded for key={key}")
        self.key = key
        self.retry_after = retry_after


@dataclass
class RateLimitConfig:
    limit: int
    window_seconds: float


class RateLimiter:
    """Sliding-window limiter keyed by caller identifier."""

    def __init__(
        self,
        *,
        limit: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = RateLimitConfig(limit=limit, window_seconds=window_seconds)
        self._events: dict[str, deque[float]] = {}
        self._lock = Lock()
        self._clock = clock

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    def _check(self, key: str) -> float:
        """Record a hit for ``key``; return 0 when allowed, else seconds until a slot frees."""

        now = self._clock()
        with self._lock:
            window_start = now - self._config.window_seconds
            self._evict_idle(window_start)
            queue = self._events.setdefault(key, deque())
            if len(queue) >= self._config.limit:
                return max(queue[0] + self._config.window_seconds - now, 0.0)
            queue.append(now)
        return 0.0

    def _evict_idle(self, window_start: float) -> None:
        for key in list(self._events):
            queue = self._events[key]
            while queue and queue[0] <= window_start:
                queue.popleft()
            if not queue:
                del self._events[key]

    def allow(self, key: str) -> bool:
        """Return True if a request for ``key`` should proceed."""

        return self._check(key) == 0.0

    def assert_allow(self, key: str) -> None:
        """Raise :class:`RateLimitExceeded` if the request should be rejected."""

        retry_after = self._check(key)
        if retry_after:
            raise RateLimitExceeded(key, retry_after)

    @property
    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._events)

    def reset(self) -> None:
        with self._lock:
            self._events.clear()
