"""Circuit breakers and retry accounting around collaborator calls.

One breaker per collaborator (vector, keyword, web):

    closed     → calls pass; failures inside monitoring_window_secs are counted
    open       → reached failure_threshold; calls are rejected with
                 CircuitOpenError until reset_timeout_secs have passed
    half_open  → up to half_open_max_calls trial calls pass; a success closes
                 the circuit, a failure opens it again

Transient failures are retried with exponential backoff before the error
reaches the retriever. Each attempt is seen by the breaker, so a flapping
source opens its circuit quickly.

State lives in a CircuitBreakers instance owned by the search engine and
passed down to retrieval; nothing is held at module level.

Usage:
    from src.engine.circuit_breaker import CircuitBreakers, ResilienceConfig

    breakers = CircuitBreakers(ResilienceConfig.from_settings())
    hits = breakers.call("web", web_search.search, query, filters)
    breakers.stats()  # {"circuits": {...}, "retries": {...}}
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, TypeVar

from .types import CollaboratorError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(CollaboratorError):
    """Raised instead of calling a collaborator whose circuit is open."""

    def __init__(self, message: str):
        super().__init__(message, retryable=False)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ResilienceConfig:
    enabled: bool = True
    failure_threshold: int = 5
    reset_timeout_secs: float = 60.0
    monitoring_window_secs: float = 60.0
    half_open_max_calls: int = 3
    max_retries: int = 1
    initial_delay_secs: float = 0.1
    backoff_multiplier: float = 2.0
    max_delay_secs: float = 1.0

    @classmethod
    def from_settings(cls, **overrides: Any) -> "ResilienceConfig":
        try:
            from ..common.config_loader import get_section

            section = get_section("resilience")
            values: Dict[str, Any] = {
                k: v for k, v in section.items() if k in cls.__dataclass_fields__
            }
        except Exception:  # noqa: BLE001
            values = {}
        values.update(overrides)
        return cls(**values)

    def retry_delay(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based), capped at max_delay_secs."""
        delay = self.initial_delay_secs * (self.backoff_multiplier ** max(0, attempt - 1))
        return min(self.max_delay_secs, delay)


def is_retryable(exc: BaseException) -> bool:
    """Open circuits and errors flagged ``retryable=False`` are not retried."""
    if isinstance(exc, CircuitOpenError):
        return False
    return bool(getattr(exc, "retryable", True))


# ---------------------------------------------------------------------------
# Breaker
# ---------------------------------------------------------------------------


class CircuitBreaker:
    """Thread-safe breaker for a single collaborator."""

    def __init__(
        self,
        name: str,
        config: ResilienceConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or ResilienceConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failure_times: Deque[float] = deque()
        self._successes = 0
        self._total_calls = 0
        self._rejected = 0
        self._opened_at: float | None = None
        self._half_open_calls = 0

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._refresh(self._clock())
            return self._state

    def _refresh(self, now: float) -> None:
        if (
            self._state == CircuitState.OPEN
            and self._opened_at is not None
            and now - self._opened_at >= self.config.reset_timeout_secs
        ):
            self._state = CircuitState.HALF_OPEN
            self._half_open_calls = 0
            logger.info("Circuit %s half-open after %.1fs", self.name, now - self._opened_at)

    def _prune(self, now: float) -> None:
        cutoff = now - self.config.monitoring_window_secs
        while self._failure_times and self._failure_times[0] <= cutoff:
            self._failure_times.popleft()

    def _open(self, now: float) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = now
        self._half_open_calls = 0
        logger.error(
            "Circuit %s opened after %d failures (reset in %.0fs)",
            self.name,
            len(self._failure_times),
            self.config.reset_timeout_secs,
        )

    def _admit(self) -> None:
        with self._lock:
            now = self._clock()
            self._total_calls += 1
            self._refresh(now)
            if self._state == CircuitState.OPEN:
                self._rejected += 1
                raise CircuitOpenError(f"Circuit open for {self.name}; service unavailable")
            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_calls >= self.config.half_open_max_calls:
                    self._rejected += 1
                    raise CircuitOpenError(f"Circuit half-open limit reached for {self.name}")
                self._half_open_calls += 1

    def record_success(self) -> None:
        with self._lock:
            self._successes += 1
            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.CLOSED
                self._failure_times.clear()
                self._opened_at = None
                self._half_open_calls = 0
                logger.info("Circuit %s closed after a successful trial call", self.name)

    def record_failure(self) -> None:
        with self._lock:
            now = self._clock()
            self._failure_times.append(now)
            self._prune(now)
            if self._state == CircuitState.HALF_OPEN:
                self._open(now)
            elif self._state == CircuitState.CLOSED and len(self._failure_times) >= self.config.failure_threshold:
                self._open(now)

    def call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        self._admit()
        try:
            result = fn(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_times.clear()
            self._successes = self._total_calls = self._rejected = 0
            self._opened_at = None
            self._half_open_calls = 0
        logger.info("Circuit %s manually reset", self.name)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            self._refresh(self._clock())
            self._prune(self._clock())
            return {
                "state": self._state.value,
                "failures": len(self._failure_times),
                "successes": self._successes,
                "total_calls": self._total_calls,
                "rejected": self._rejected,
            }


# ---------------------------------------------------------------------------
# Registry with retries
# ---------------------------------------------------------------------------


@dataclass
class RetryStats:
    total_calls: int = 0
    total_retries: int = 0
    successful_retries: int = 0
    failed_retries: int = 0
    retries_by_error: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class CircuitBreakers:
    """Named breakers plus per-collaborator retry counters."""

    def __init__(
        self,
        config: ResilienceConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or ResilienceConfig()
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._retries: Dict[str, RetryStats] = {}

    def breaker(self, name: str) -> CircuitBreaker:
        with self._lock:
            if name not in self._breakers:
                self._breakers[name] = CircuitBreaker(name, self.config, clock=self._clock)
                self._retries[name] = RetryStats()
            return self._breakers[name]

    def _finish(self, name: str, attempt: int, ok: bool) -> None:
        with self._lock:
            stats = self._retries[name]
            stats.total_calls += 1
            if attempt:
                if ok:
                    stats.successful_retries += 1
                else:
                    stats.failed_retries += 1

    def _count_retry(self, name: str, exc: Exception) -> None:
        with self._lock:
            stats = self._retries[name]
            stats.total_retries += 1
            key = type(exc).__name__
            stats.retries_by_error[key] = stats.retries_by_error.get(key, 0) + 1

    def call(self, name: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run ``fn`` through the named breaker, retrying transient failures."""
        if not self.config.enabled:
            return fn(*args, **kwargs)

        breaker = self.breaker(name)
        attempt = 0
        while True:
            try:
                result = breaker.call(fn, *args, **kwargs)
            except Exception as exc:
                if attempt >= self.config.max_retries or not is_retryable(exc):
                    self._finish(name, attempt, ok=False)
                    raise
                attempt += 1
                self._count_retry(name, exc)
                delay = self.config.retry_delay(attempt)
                logger.warning(
                    "%s call failed (%s), retry %d/%d in %.2fs",
                    name, exc, attempt, self.config.max_retries, delay,
                )
                self._sleep(delay)
                continue
            self._finish(name, attempt, ok=True)
            return result

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            breakers = dict(self._breakers)
            retries = {name: s.to_dict() for name, s in self._retries.items()}
        return {
            "circuits": {name: b.stats() for name, b in breakers.items()},
            "retries": retries,
        }

    def health(self) -> Dict[str, Any]:
        with self._lock:
            breakers = dict(self._breakers)
        states = {name: b.state.value for name, b in breakers.items()}
        return {
            "healthy": all(s != CircuitState.OPEN.value for s in states.values()),
            "circuits": states,
        }

    def reset(self) -> None:
        with self._lock:
            breakers = list(self._breakers.values())
            self._retries = {name: RetryStats() for name in self._breakers}
        for b in breakers:
            b.reset()
