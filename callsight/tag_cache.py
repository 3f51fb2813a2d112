from __future__ import annotations

import hashlib
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .taxonomy import ChunkTag


@dataclass(frozen=True)
class _Entry:
    tags: Tuple[ChunkTag, ...]
    created_at: float


def hash_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class TagCache:
    """Content-addressed LRU cache of chunk tags with a TTL.

    Keys are SHA-256 digests of the chunk text, so identical redacted text
    from any call maps to the same entry.
    """

    def __init__(
        self,
        max_size: int = 10_000,
        ttl_s: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be > 0")
        self._max_size = max_size
        self._ttl_s = ttl_s
        self._clock = clock
        self._entries: "OrderedDict[str, _Entry]" = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get(self, text: str) -> Optional[List[ChunkTag]]:
        key = hash_text(text)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if self._clock() - entry.created_at > self._ttl_s:
                del self._entries[key]
                self._misses += 1
                return None
            self._entries.move_to_end(key)
            self._hits += 1
            return list(entry.tags)

    def set(self, text: str, tags: Sequence[ChunkTag]) -> None:
        key = hash_text(text)
        with self._lock:
            self._entries.pop(key, None)
            while len(self._entries) >= self._max_size:
                self._entries.popitem(last=False)
            self._entries[key] = _Entry(tags=tuple(tags), created_at=self._clock())

    def stats(self) -> Dict[str, float]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "size": len(self._entries),
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": self._hits / total if total else 0.0,
            }

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
