from __future__ import annotations

import math
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Optional


class RateLimitTimeout(RuntimeError):
    pass


@dataclass
class _Waiter:
    tokens: int
    granted: threading.Event = field(default_factory=threading.Event)


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


class RateLimiter:
    """Fixed-window request/token limiter with strict FIFO admission.

    A caller only takes the fast path when nobody is queued, so a small
    request can never overtake an earlier, larger one that is still waiting.
    All state changes happen under a single lock.
    """

    estimate_tokens = staticmethod(estimate_tokens)

    def __init__(
        self,
        max_rpm: int = 500,
        max_tpm: int = 30_000,
        window_s: float = 60.0,
        poll_interval_s: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_rpm <= 0 or max_tpm <= 0:
            raise ValueError("max_rpm and max_tpm must be > 0")
        self._max_rpm = max_rpm
        self._max_tpm = max_tpm
        self._window_s = window_s
        self._poll_interval_s = poll_interval_s
        self._clock = clock
        self._lock = threading.Lock()
        self._queue: Deque[_Waiter] = deque()
        self._window_start = clock()
        self._requests = 0
        self._tokens = 0

    def _maybe_reset_window(self) -> None:
        now = self._clock()
        if now - self._window_start >= self._window_s:
            self._window_start = now
            self._requests = 0
            self._tokens = 0

    def _has_headroom(self, tokens: int) -> bool:
        if self._requests + 1 > self._max_rpm:
            return False
        # A single request larger than the whole budget runs in an empty window.
        if tokens > self._max_tpm:
            return self._tokens == 0
        return self._tokens + tokens <= self._max_tpm

    def _consume(self, tokens: int) -> None:
        self._requests += 1
        self._tokens += tokens

    def _drain(self) -> None:
        self._maybe_reset_window()
        while self._queue:
            head = self._queue[0]
            if not self._has_headroom(head.tokens):
                break
            self._queue.popleft()
            self._consume(head.tokens)
            head.granted.set()

    def _next_wait_s(self) -> float:
        remaining = self._window_s - (self._clock() - self._window_start)
        return max(0.01, min(self._poll_interval_s, remaining))

    def acquire(self, estimated_tokens: int, timeout: Optional[float] = None) -> None:
        tokens = max(0, int(estimated_tokens))
        with self._lock:
            self._maybe_reset_window()
            if not self._queue and self._has_headroom(tokens):
                self._consume(tokens)
                return
            waiter = _Waiter(tokens=tokens)
            self._queue.append(waiter)
            wait_s = self._next_wait_s()

        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if waiter.granted.wait(wait_s):
                return
            with self._lock:
                self._drain()
                if waiter.granted.is_set():
                    return
                if deadline is not None and time.monotonic() >= deadline:
                    self._queue.remove(waiter)
                    raise RateLimitTimeout(
                        f"rate limiter wait exceeded {timeout}s for {tokens} tokens"
                    )
                wait_s = self._next_wait_s()

    def report_usage(self, actual_tokens: int, estimated_tokens: int) -> None:
        diff = int(actual_tokens) - int(estimated_tokens)
        if diff <= 0:
            return
        with self._lock:
            self._tokens += diff

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._queue)

    def snapshot(self) -> Dict[str, float]:
        with self._lock:
            return {
                "requests_this_window": self._requests,
                "tokens_this_window": self._tokens,
                "window_start": self._window_start,
                "queued": len(self._queue),
            }
