from __future__ import annotations

import re
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Sequence

from .audit import AuditEvent, AuditSink
from .llm_client import (
    ChatCompletionClient,
    ChatCompletionOptions,
    ChatCompletionResult,
    ChatMessage,
    LLMProviderError,
)
from .logging_utils import get_logger

STATE_CLOSED = "closed"
STATE_OPEN = "open"
STATE_HALF_OPEN = "half_open"

MIN_COOLDOWN_S = 5.0

_TRANSIENT_PATTERNS = (
    re.compile(r"\b(429|rate.?limit|quota)\b"),
    re.compile(r"\b(5\d{2}|service unavailable|gateway timeout|bad gateway)\b"),
    re.compile(r"\b(timeout|timed out|connection reset|socket|network|temporar)"),
)

logger = get_logger(__name__)


class LLMCircuitOpenError(LLMProviderError):
    def __init__(self, circuit_key: str) -> None:
        super().__init__(
            f"AI provider temporarily unavailable: circuit {circuit_key} is open",
            retryable=True,
        )
        self.circuit_key = circuit_key


def is_transient_provider_error(error: BaseException) -> bool:
    if isinstance(error, LLMProviderError):
        return error.retryable
    message = str(error).lower()
    return any(pattern.search(message) for pattern in _TRANSIENT_PATTERNS)


@dataclass(frozen=True)
class CircuitSnapshot:
    state: str
    consecutive_failures: int
    opened_at: Optional[float]
    cooldown_s: float


TransitionListener = Callable[[str, str, str, int], None]


class CircuitBreaker:
    """Closed -> open after N consecutive failures, half-open after cooldown.

    In half-open exactly one trial call is let through; its outcome closes or
    reopens the circuit.
    """

    def __init__(
        self,
        key: str,
        failure_threshold: int = 3,
        cooldown_s: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        on_transition: Optional[TransitionListener] = None,
    ) -> None:
        self.key = key
        self._threshold = max(1, int(failure_threshold))
        self._cooldown_s = max(MIN_COOLDOWN_S, float(cooldown_s))
        self._clock = clock
        self._on_transition = on_transition
        self._lock = threading.Lock()
        self._state = STATE_CLOSED
        self._failures = 0
        self._opened_at: Optional[float] = None

    def _transition(self, new_state: str) -> Optional[tuple]:
        old_state = self._state
        if old_state == new_state:
            return None
        self._state = new_state
        return (self.key, old_state, new_state, self._failures)

    def _notify(self, change: Optional[tuple]) -> None:
        if change is None:
            return
        key, old_state, new_state, failures = change
        logger.warning(
            "llm_circuit.transition key=%s from=%s to=%s failures=%s",
            key,
            old_state,
            new_state,
            failures,
        )
        if self._on_transition is not None:
            self._on_transition(key, old_state, new_state, failures)

    def allow_request(self) -> bool:
        change = None
        with self._lock:
            if self._state == STATE_CLOSED:
                allowed = True
            elif self._state == STATE_OPEN:
                opened_at = self._opened_at or 0.0
                allowed = self._clock() - opened_at >= self._cooldown_s
                if allowed:
                    change = self._transition(STATE_HALF_OPEN)
            else:
                # A trial call is already in flight.
                allowed = False
        self._notify(change)
        return allowed

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0
            self._opened_at = None
            change = self._transition(STATE_CLOSED)
        self._notify(change)

    def record_failure(self) -> int:
        change = None
        with self._lock:
            self._failures += 1
            failures = self._failures
            if self._state == STATE_HALF_OPEN or (
                self._state == STATE_CLOSED and self._failures >= self._threshold
            ):
                self._opened_at = self._clock()
                change = self._transition(STATE_OPEN)
        self._notify(change)
        return failures

    def snapshot(self) -> CircuitSnapshot:
        with self._lock:
            return CircuitSnapshot(
                state=self._state,
                consecutive_failures=self._failures,
                opened_at=self._opened_at,
                cooldown_s=self._cooldown_s,
            )


class CircuitBreakerRegistry:
    """Holds one breaker per provider pairing for the lifetime of a process."""

    def __init__(
        self,
        audit: Optional[AuditSink] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._audit = audit
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def _record_transition(self, key: str, old_state: str, new_state: str, failures: int) -> None:
        if self._audit is None:
            return
        self._audit.record(
            AuditEvent(
                category="AI",
                action="CIRCUIT_BREAKER_TRANSITION",
                target_type="llm_provider",
                target_id=key,
                severity="WARN" if new_state == STATE_OPEN else "INFO",
                metadata={"from": old_state, "to": new_state, "failures": failures},
            )
        )

    def get(self, key: str, failure_threshold: int = 3, cooldown_s: float = 60.0) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(key)
            if breaker is None:
                breaker = CircuitBreaker(
                    key,
                    failure_threshold=failure_threshold,
                    cooldown_s=cooldown_s,
                    clock=self._clock,
                    on_transition=self._record_transition,
                )
                self._breakers[key] = breaker
            return breaker

    def snapshots(self) -> Dict[str, CircuitSnapshot]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {breaker.key: breaker.snapshot() for breaker in breakers}


class FailoverLLMClient:
    """Wraps a primary client with a circuit breaker and an optional fallback."""

    def __init__(
        self,
        primary: ChatCompletionClient,
        fallback: Optional[ChatCompletionClient],
        registry: CircuitBreakerRegistry,
        *,
        circuit_key: Optional[str] = None,
        failure_threshold: int = 3,
        cooldown_s: float = 60.0,
        max_attempts: int = 2,
    ) -> None:
        self.primary = primary
        self.fallback = fallback
        self.provider_name = primary.provider_name
        self.model_name = primary.model_name
        self.circuit_key = circuit_key or f"{primary.provider_name}:{primary.model_name}"
        self._breaker = registry.get(
            self.circuit_key,
            failure_threshold=failure_threshold,
            cooldown_s=cooldown_s,
        )
        self._max_attempts = max(1, int(max_attempts))

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    def chat_completion(
        self,
        messages: Sequence[ChatMessage],
        options: Optional[ChatCompletionOptions] = None,
    ) -> ChatCompletionResult:
        if not self._breaker.allow_request():
            if self.fallback is None:
                raise LLMCircuitOpenError(self.circuit_key)
            logger.warning(
                "llm_failover.circuit_open_fallback key=%s primary=%s fallback=%s",
                self.circuit_key,
                self.primary.provider_name,
                self.fallback.provider_name,
            )
            return self.fallback.chat_completion(messages, options)

        max_primary_attempts = 1 if self.fallback is not None else self._max_attempts
        attempt = 0
        while True:
            attempt += 1
            try:
                result = self.primary.chat_completion(messages, options)
            except Exception as exc:
                if not is_transient_provider_error(exc):
                    # The provider answered; a bad request says nothing about its health.
                    self._breaker.record_success()
                    raise
                failures = self._breaker.record_failure()
                if self.fallback is not None:
                    logger.warning(
                        "llm_failover.fallback key=%s attempt=%s failures=%s primary=%s fallback=%s error=%s",
                        self.circuit_key,
                        attempt,
                        failures,
                        self.primary.provider_name,
                        self.fallback.provider_name,
                        str(exc),
                    )
                    return self.fallback.chat_completion(messages, options)
                if attempt >= max_primary_attempts or not self._breaker.allow_request():
                    raise
                logger.warning(
                    "llm_failover.retry key=%s attempt=%s failures=%s provider=%s error=%s",
                    self.circuit_key,
                    attempt,
                    failures,
                    self.primary.provider_name,
                    str(exc),
                )
                continue
            self._breaker.record_success()
            return result
