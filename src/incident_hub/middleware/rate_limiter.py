"""
Rate limiting for inbound HTTP endpoints.

Implements token bucket algorithm for rate limiting.
"""

import time
from threading import Lock
from typing import Callable, Dict


class RateLimiter:
    """
    Token bucket rate limiter.

    Each key (usually the client address) gets a bucket holding up to
    `requests_per_minute` tokens, refilled continuously. Thread-safe.
    """

    def __init__(self, requests_per_minute: int = 60, clock: Callable[[], float] = time.monotonic):
        """
        Initialize rate limiter.

        Args:
            requests_per_minute: Maximum requests allowed per minute
            clock: Seconds source, injectable for tests
        """
        if requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be positive")
        self.rate = requests_per_minute
        self.tokens_per_second = requests_per_minute / 60.0
        self.max_tokens = float(requests_per_minute)
        self.clock = clock

        self._buckets: Dict[str, Dict[str, float]] = {}
        self._lock = Lock()

    def is_allowed(self, key: str) -> bool:
        """
        Take one token for `key`.

        Returns:
            True if request is allowed, False if rate limit exceeded
        """
        now = self.clock()

        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                self._buckets[key] = {'tokens': self.max_tokens - 1, 'last_update': now}
                return True

            elapsed = now - bucket['last_update']
            bucket['tokens'] = min(self.max_tokens, bucket['tokens'] + elapsed * self.tokens_per_second)
            bucket['last_update'] = now

            if bucket['tokens'] >= 1.0:
                bucket['tokens'] -= 1.0
                return True
            return False

    def reset(self, key: str) -> None:
        with self._lock:
            self._buckets.pop(key, None)
