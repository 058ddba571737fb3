"""
Retry + circuit breaker wrapper for fallible remote operations.

States:
- CLOSED: calls pass through; consecutive terminal failures are counted
- OPEN: calls fail fast with CircuitOpenError until the reset time
- HALF_OPEN: reset time reached, exactly one trial call is let through

One ResilientCaller (and therefore one breaker) exists per remote call family,
so an outage of the embedding endpoint never blocks response generation.
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import structlog

from domain.errors import CircuitOpenError, RemoteCallFailed, TransientRemoteError
from infrastructure.observability.logging import MetricsCollector

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states"""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerState:
    """Process-scoped breaker state for one call family"""

    failure_count: int = 0
    is_open: bool = False
    reset_at: Optional[float] = None
    trial_in_flight: bool = False


def is_transient(error: BaseException) -> bool:
    """Rate-limit signals and server-side failures are worth retrying"""

    if isinstance(error, TransientRemoteError):
        return True
    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True

    status = getattr(error, "status_code", None)
    if status is None:
        status = getattr(error, "status", None)
    if isinstance(status, int):
        return status == 429 or status >= 500

    message = str(error).lower()
    return "rate limit" in message or "ratelimit" in type(error).__name__.lower()


class CircuitBreaker:
    """Consecutive-failure breaker with a single trial call after cooldown"""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._state = CircuitBreakerState()

    @property
    def state(self) -> CircuitState:
        if not self._state.is_open:
            return CircuitState.CLOSED
        if self._state.trial_in_flight or self._clock() >= self._state.reset_at:
            return CircuitState.HALF_OPEN
        return CircuitState.OPEN

    @property
    def failure_count(self) -> int:
        return self._state.failure_count

    def before_call(self) -> bool:
        """Admit or reject a call; returns True when the call is the recovery trial"""

        if not self._state.is_open:
            return False

        now = self._clock()
        if now >= self._state.reset_at and not self._state.trial_in_flight:
            self._state.trial_in_flight = True
            logger.info("Circuit breaker half-open, allowing trial call", breaker=self.name)
            return True

        raise CircuitOpenError(self.name, max(0.0, self._state.reset_at - now))

    def record_success(self):
        """Any success closes the breaker"""

        was_open = self._state.is_open
        self._state = CircuitBreakerState()
        if was_open:
            logger.info("Circuit breaker closed", breaker=self.name)

    def record_failure(self):
        """Count a terminal failure and open the breaker at the threshold"""

        self._state.failure_count += 1
        self._state.trial_in_flight = False

        if self._state.failure_count >= self.failure_threshold:
            self._state.is_open = True
            self._state.reset_at = self._clock() + self.reset_timeout
            logger.warning(
                "Circuit breaker open",
                breaker=self.name,
                failures=self._state.failure_count,
                reset_in_seconds=self.reset_timeout
            )

    def release_trial(self):
        """Give the trial slot back when the trial call was cancelled"""
        self._state.trial_in_flight = False

    def get_metrics(self) -> Dict[str, Any]:
        """Get current breaker state for health reporting"""

        retry_after = None
        if self._state.is_open and self._state.reset_at is not None:
            retry_after = max(0.0, self._state.reset_at - self._clock())

        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self._state.failure_count,
            "retry_after_seconds": retry_after,
            "config": {
                "failure_threshold": self.failure_threshold,
                "reset_timeout": self.reset_timeout,
            },
        }


class ResilientCaller:
    """
    Runs one remote operation with bounded retries behind a circuit breaker.

    Usage:
        caller = ResilientCaller("classification")
        completion = await caller.execute(lambda: llm.classify(text), "classify_message")

    The caller is call-agnostic: token usage and cost are recorded by whoever
    invokes execute().
    """

    def __init__(
        self,
        name: str,
        max_retries: int = 3,
        backoff_base_ms: int = 1000,
        backoff_cap_ms: int = 10000,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.name = name
        self.max_retries = max_retries
        self.backoff_base_ms = backoff_base_ms
        self.backoff_cap_ms = backoff_cap_ms
        self.breaker = CircuitBreaker(
            name=name,
            failure_threshold=failure_threshold,
            reset_timeout=reset_timeout,
            clock=clock,
        )
        self._clock = clock
        self._sleep = sleep
        self.metrics = metrics or MetricsCollector()

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait before retry number attempt + 1"""
        return min(self.backoff_base_ms * (2 ** attempt), self.backoff_cap_ms) / 1000.0

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str,
        max_retries: Optional[int] = None,
    ) -> T:
        """Run operation, retrying transient failures; raises CircuitOpenError or RemoteCallFailed"""

        retries = self.max_retries if max_retries is None else max_retries

        try:
            trial = self.breaker.before_call()
        except CircuitOpenError:
            self.metrics.increment_counter(f"remote_call.{self.name}.rejected")
            raise

        if trial:
            retries = 0

        attempt = 0
        while True:
            started = self._clock()
            try:
                result = await operation()
            except asyncio.CancelledError:
                if trial:
                    self.breaker.release_trial()
                raise
            except Exception as e:
                transient = is_transient(e)

                if transient and attempt < retries:
                    delay = self.backoff_delay(attempt)
                    logger.warning(
                        "Transient remote failure, retrying",
                        call_family=self.name,
                        operation=operation_name,
                        attempt=attempt + 1,
                        retry_in_seconds=delay,
                        error=str(e)
                    )
                    await self._sleep(delay)
                    attempt += 1
                    continue

                self.breaker.record_failure()
                self.metrics.increment_counter(f"remote_call.{self.name}.failure")
                logger.error(
                    "Remote call failed",
                    call_family=self.name,
                    operation=operation_name,
                    attempts=attempt + 1,
                    transient=transient,
                    consecutive_failures=self.breaker.failure_count,
                    error=str(e)
                )
                raise RemoteCallFailed(operation_name, transient, attempt + 1, e) from e

            self.breaker.record_success()
            self.metrics.record_latency(
                f"remote_call.{self.name}",
                (self._clock() - started) * 1000,
                tags={"operation": operation_name}
            )
            return result
