"""
llmloop - Retry with backoff and per-provider circuit breaking.

``ResilientProvider`` sits between the agent loop and a provider adapter.
It retries requests that failed before their stream started with a
retryable error, and consults a circuit breaker shared by every run that
uses the same provider so that a failing backend is skipped quickly instead
of being hammered by each conversation.

Circuit states:

    CLOSED    --N consecutive failures-->   OPEN
    OPEN      --cooldown elapsed-------->   HALF_OPEN (one probe request)
    HALF_OPEN --probe succeeds---------->   CLOSED
    HALF_OPEN --probe fails------------->   OPEN
"""

import asyncio
import logging
import random
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from .adapters.base import ProviderAdapter
from .cancellation import CancellationToken
from .events import EventStream
from .exceptions import (
    CircuitOpenError,
    LLMLoopError,
    RequestTimeoutError,
    RunCancelledError,
)
from .models import Message, RequestOptions, ToolDefinition
from .observability import LifecycleKind, Observer

logger = logging.getLogger("llmloop.resilience")

DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_COOLDOWN = 60.0
DEFAULT_REQUEST_TIMEOUT = 120.0


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with jitter for never-started requests.

    The delay before retry ``n`` (1-based) is
    ``min(base_delay_ms * multiplier ** (n - 1), max_delay_ms)`` plus up to
    ``jitter`` of that value.
    """

    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 32000
    multiplier: float = 2.0
    jitter: float = 0.1

    def delay_for_attempt(
        self,
        attempt: int,
        retry_after: Optional[float] = None,
        rand: Callable[[], float] = random.random,
    ) -> float:
        """Seconds to wait before retry ``attempt``. Attempt 0 waits 0."""
        if attempt <= 0:
            return 0.0
        delay_ms = min(
            self.base_delay_ms * self.multiplier ** (attempt - 1), self.max_delay_ms
        )
        delay_ms += delay_ms * self.jitter * rand()
        delay = delay_ms / 1000.0
        if retry_after is not None:
            delay = max(delay, min(retry_after, self.max_delay_ms / 1000.0))
        return delay

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_retries": self.max_retries,
            "base_delay_ms": self.base_delay_ms,
            "max_delay_ms": self.max_delay_ms,
            "multiplier": self.multiplier,
            "jitter": self.jitter,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RetryPolicy":
        return cls(
            max_retries=data.get("max_retries", 3),
            base_delay_ms=data.get("base_delay_ms", 1000),
            max_delay_ms=data.get("max_delay_ms", 32000),
            multiplier=data.get("multiplier", 2.0),
            jitter=data.get("jitter", 0.1),
        )


class CircuitState(str, Enum):
    """State of a provider's circuit breaker."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Consecutive-failure breaker for one provider. Thread-safe."""

    def __init__(
        self,
        provider: str,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        cooldown: float = DEFAULT_COOLDOWN,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.provider = provider
        self.failure_threshold = failure_threshold
        self.cooldown = cooldown
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._open_until = 0.0
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._failures

    def retry_in(self) -> float:
        """Seconds until an open breaker admits a probe."""
        with self._lock:
            if self._state != CircuitState.OPEN:
                return 0.0
            return max(0.0, self._open_until - self._clock())

    def allow_request(self) -> bool:
        """Whether a request may go to the network now.

        After the cooldown the first caller is admitted as the half-open
        probe; everyone else is rejected until the probe resolves.
        """
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.OPEN:
                if self._clock() < self._open_until:
                    return False
                self._state = CircuitState.HALF_OPEN
                self._probe_in_flight = True
                logger.info("Circuit for '%s' half-open, allowing one probe", self.provider)
                return True
            if self._probe_in_flight:
                return False
            self._probe_in_flight = True
            return True

    def record_success(self) -> None:
        with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info("Circuit for '%s' closed", self.provider)
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._probe_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            self._probe_in_flight = False
            if self._state == CircuitState.HALF_OPEN or (
                self._state == CircuitState.CLOSED and self._failures >= self.failure_threshold
            ):
                self._state = CircuitState.OPEN
                self._open_until = self._clock() + self.cooldown
                logger.warning(
                    "Circuit for '%s' opened after %d consecutive failures",
                    self.provider,
                    self._failures,
                )

    def release_probe(self) -> None:
        """Give up a half-open probe slot without recording an outcome."""
        with self._lock:
            self._probe_in_flight = False

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._open_until = 0.0
            self._probe_in_flight = False


class CircuitBreakerRegistry:
    """Breakers keyed by provider identity, shared by concurrent runs.

    Inject one registry into every ResilientProvider that should share
    circuit state.
    """

    def __init__(
        self,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        cooldown: float = DEFAULT_COOLDOWN,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.cooldown = cooldown
        self._clock = clock
        self._lock = threading.Lock()
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, provider: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(provider)
            if breaker is None:
                breaker = CircuitBreaker(
                    provider,
                    failure_threshold=self.failure_threshold,
                    cooldown=self.cooldown,
                    clock=self._clock,
                )
                self._breakers[provider] = breaker
            return breaker

    def states(self) -> dict[str, CircuitState]:
        with self._lock:
            breakers = dict(self._breakers)
        return {name: b.state for name, b in breakers.items()}

    def reset(self, provider: Optional[str] = None) -> None:
        with self._lock:
            breakers = (
                [self._breakers[provider]]
                if provider in self._breakers
                else ([] if provider else list(self._breakers.values()))
            )
        for breaker in breakers:
            breaker.reset()


class ResilientProvider:
    """Retrying, circuit-breaking front for one provider adapter."""

    def __init__(
        self,
        provider: ProviderAdapter,
        breakers: Optional[CircuitBreakerRegistry] = None,
        retry_policy: Optional[RetryPolicy] = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        observer: Optional[Observer] = None,
    ):
        self.provider = provider
        self.breakers = breakers or CircuitBreakerRegistry()
        self.retry_policy = retry_policy or RetryPolicy()
        self.request_timeout = request_timeout
        self.observer = observer or Observer()

    @property
    def name(self) -> str:
        return self.provider.name

    async def send(
        self,
        messages: list[Message],
        tools: list[ToolDefinition],
        options: RequestOptions,
        cancel: Optional[CancellationToken] = None,
    ) -> EventStream:
        """Open a stream, retrying never-started retryable failures.

        Raises:
            CircuitOpenError: The provider's breaker rejected the request.
            RunCancelledError: ``cancel`` fired while waiting.
            LLMLoopError: A non-retryable failure, or the last retryable
                failure once retries are exhausted.
        """
        cancel = cancel or CancellationToken()
        breaker = self.breakers.get(self.name)
        last_error: Optional[LLMLoopError] = None
        attempt = 0

        while True:
            cancel.raise_if_cancelled()

            before = breaker.state
            if not breaker.allow_request():
                self.observer.metrics.count_event("circuit_rejected")
                raise CircuitOpenError(self.name, retry_in=breaker.retry_in()) from last_error
            self._report_transition(breaker, before)

            self.observer.emit(
                LifecycleKind.REQUEST_START,
                provider=self.name,
                model=self.provider.model,
                attempt=attempt,
            )
            t0 = time.monotonic()
            try:
                stream = await cancel.race(
                    self.provider.send(messages, tools, options),
                    timeout=self.request_timeout,
                )
            except RunCancelledError:
                breaker.release_probe()
                raise
            except asyncio.TimeoutError:
                error: LLMLoopError = RequestTimeoutError(
                    f"{self.name}: no response within {self.request_timeout:g}s"
                )
            except LLMLoopError as e:
                error = e
            else:
                latency_ms = (time.monotonic() - t0) * 1000
                before = breaker.state
                breaker.record_success()
                self._report_transition(breaker, before)
                self.observer.metrics.record_request_latency_ms(self.name, latency_ms)
                self.observer.emit(
                    LifecycleKind.REQUEST_END,
                    provider=self.name,
                    attempt=attempt,
                    success=True,
                    latency_ms=round(latency_ms, 2),
                )
                return stream

            self.observer.emit(
                LifecycleKind.REQUEST_END,
                provider=self.name,
                attempt=attempt,
                success=False,
                error=str(error),
            )

            # Only provider-side failures count against the circuit; a
            # rejected request proves the provider is reachable.
            before = breaker.state
            if error.retryable:
                breaker.record_failure()
            else:
                breaker.record_success()
            self._report_transition(breaker, before)

            if not error.retryable or attempt >= self.retry_policy.max_retries:
                raise error

            attempt += 1
            delay = self.retry_policy.delay_for_attempt(
                attempt, retry_after=getattr(error, "retry_after", None)
            )
            logger.warning(
                "Request to '%s' failed (%s); retry %d/%d in %.2fs",
                self.name,
                error,
                attempt,
                self.retry_policy.max_retries,
                delay,
            )
            self.observer.metrics.count_retry(self.name)
            self.observer.emit(
                LifecycleKind.RETRY_ATTEMPT,
                provider=self.name,
                attempt=attempt,
                delay_s=round(delay, 3),
                error=str(error),
            )
            await cancel.race(asyncio.sleep(delay))
            last_error = error

    def _report_transition(self, breaker: CircuitBreaker, before: CircuitState) -> None:
        after = breaker.state
        if after == before:
            return
        if after == CircuitState.OPEN:
            self.observer.metrics.count_circuit_breaker_open(self.name)
        self.observer.emit(
            LifecycleKind.CIRCUIT_TRANSITION,
            provider=self.name,
            from_state=before.value,
            to_state=after.value,
        )
