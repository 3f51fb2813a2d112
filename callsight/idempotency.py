from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Protocol

from redis import Redis

from .config import Settings
from .logging_utils import get_logger

MIN_TTL_S = 1.0
DEFAULT_TTL_S = 300.0
REDIS_KEY_PREFIX = "callsight:webhook-event:"

logger = get_logger(__name__)


class IdempotencyLedger(Protocol):
    def mark_if_new(self, key: str, ttl_s: float = DEFAULT_TTL_S) -> bool:
        ...

    def release(self, key: str) -> None:
        ...


class InMemoryIdempotencyLedger:
    """Process-local ledger; only deduplicates within a single API process."""

    def __init__(
        self,
        prune_interval_s: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._expires_at: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self._prune_interval_s = prune_interval_s
        self._last_prune = clock()

    def _prune(self, now: float) -> None:
        if now - self._last_prune < self._prune_interval_s:
            return
        expired = [key for key, expires in self._expires_at.items() if expires <= now]
        for key in expired:
            del self._expires_at[key]
        self._last_prune = now

    def mark_if_new(self, key: str, ttl_s: float = DEFAULT_TTL_S) -> bool:
        key = (key or "").strip()
        if not key:
            return True
        ttl = max(MIN_TTL_S, float(ttl_s))
        with self._lock:
            now = self._clock()
            self._prune(now)
            expires = self._expires_at.get(key)
            if expires is not None and expires > now:
                return False
            self._expires_at[key] = now + ttl
            return True

    def release(self, key: str) -> None:
        with self._lock:
            self._expires_at.pop((key or "").strip(), None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._expires_at)


class RedisIdempotencyLedger:
    """Shared ledger so every API replica sees the same delivery keys."""

    def __init__(self, connection: Redis, prefix: str = REDIS_KEY_PREFIX) -> None:
        self._redis = connection
        self._prefix = prefix

    def mark_if_new(self, key: str, ttl_s: float = DEFAULT_TTL_S) -> bool:
        key = (key or "").strip()
        if not key:
            return True
        ttl_ms = int(max(MIN_TTL_S, float(ttl_s)) * 1000)
        created = self._redis.set(f"{self._prefix}{key}", "1", nx=True, px=ttl_ms)
        return bool(created)

    def release(self, key: str) -> None:
        key = (key or "").strip()
        if key:
            self._redis.delete(f"{self._prefix}{key}")


def build_idempotency_ledger(
    settings: Settings, connection: Optional[Redis] = None
) -> IdempotencyLedger:
    backend = settings.webhook_idempotency_backend.strip().lower()
    if backend == "redis":
        if connection is None:
            connection = Redis.from_url(settings.redis_url)
        return RedisIdempotencyLedger(connection)
    if backend != "memory":
        raise ValueError(f"unknown webhook idempotency backend: {backend}")
    logger.info("webhook_idempotency.backend backend=memory")
    return InMemoryIdempotencyLedger()
