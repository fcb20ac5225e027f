"""
Replay protection for inbound webhooks.

A webhook body is identified by the MD5 of its raw bytes and remembered
for a TTL once it has been processed successfully.
"""
import hashlib
import logging
import threading
import time
from typing import Callable, Dict

from ..constants import DEFAULT_IDEMPOTENCY_TTL_SECONDS

logger = logging.getLogger(__name__)


def payload_key(body: bytes) -> str:
    return hashlib.md5(body).hexdigest()


class IdempotencyCache:
    """
    Thread-safe TTL set of processed payload keys.

    Expired keys are purged lazily whenever a new key is recorded.

    Example:
        >>> cache = IdempotencyCache(ttl=600)
        >>> cache.is_processed(body)
        False
        >>> cache.mark_processed(body)
        >>> cache.is_processed(body)
        True
    """

    def __init__(
        self,
        ttl: float = DEFAULT_IDEMPOTENCY_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl
        self.clock = clock
        self._expires: Dict[str, float] = {}
        self._lock = threading.Lock()

    def is_processed(self, body: bytes) -> bool:
        key = payload_key(body)
        with self._lock:
            expires_at = self._expires.get(key)
        return expires_at is not None and self.clock() < expires_at

    def mark_processed(self, body: bytes) -> None:
        now = self.clock()
        with self._lock:
            self._purge(now)
            self._expires[payload_key(body)] = now + self.ttl

    def _purge(self, now: float) -> None:
        expired = [k for k, expires_at in self._expires.items() if expires_at <= now]
        for key in expired:
            del self._expires[key]
        if expired:
            logger.debug(f"Purged {len(expired)} expired idempotency keys")

    def __len__(self) -> int:
        with self._lock:
            return len(self._expires)
