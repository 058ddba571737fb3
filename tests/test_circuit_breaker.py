"""
Tests for the retrying, circuit-breaker-guarded call wrapper.
"""

import asyncio

import pytest

from domain.errors import CircuitOpenError, RemoteCallFailed, TransientRemoteError
from domain.resilience.circuit_breaker import CircuitState, ResilientCaller, is_transient
from fakes import StatusError


class CountingOperation:
    """Remote operation stand-in that fails the first `failures` invocations"""

    def __init__(self, error=None, failures=0, result="ok"):
        self.error = error
        self.failures = failures
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.error is not None and (self.failures == 0 or self.calls <= self.failures):
            raise self.error
        return self.result


@pytest.fixture
def caller(clock, sleep):
    return ResilientCaller("classification", clock=clock, sleep=sleep)


class TestClassification:

    def test_rate_limit_and_server_errors_are_transient(self):
        assert is_transient(TransientRemoteError("overloaded"))
        assert is_transient(StatusError("Too many requests", 429))
        assert is_transient(StatusError("Bad gateway", 502))
        assert is_transient(RuntimeError("Rate limit exceeded for model"))
        assert is_transient(ConnectionError("reset by peer"))

    def test_client_errors_are_not_transient(self):
        assert not is_transient(StatusError("Bad request", 400))
        assert not is_transient(StatusError("Unauthorized", 401))
        assert not is_transient(ValueError("malformed"))


class TestRetries:

    @pytest.mark.asyncio
    async def test_success_returns_result(self, caller):
        operation = CountingOperation(result="classified")

        assert await caller.execute(operation, "classify_message") == "classified"
        assert operation.calls == 1
        assert caller.breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_transient_failures_retry_with_exponential_backoff(self, caller, sleep):
        operation = CountingOperation(error=TransientRemoteError("503"))

        with pytest.raises(RemoteCallFailed) as exc_info:
            await caller.execute(operation, "classify_message")

        assert operation.calls == 4
        assert sleep.delays == [1.0, 2.0, 4.0]
        assert exc_info.value.transient is True
        assert exc_info.value.attempts == 4
        assert isinstance(exc_info.value.cause, TransientRemoteError)

    @pytest.mark.asyncio
    async def test_transient_failure_then_success(self, caller, sleep):
        operation = CountingOperation(error=StatusError("rate limited", 429), failures=2, result="done")

        assert await caller.execute(operation, "classify_message") == "done"
        assert operation.calls == 3
        assert sleep.delays == [1.0, 2.0]
        assert caller.breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_non_transient_failure_is_not_retried(self, caller, sleep):
        operation = CountingOperation(error=StatusError("Bad request", 400))

        with pytest.raises(RemoteCallFailed) as exc_info:
            await caller.execute(operation, "classify_message")

        assert operation.calls == 1
        assert sleep.delays == []
        assert exc_info.value.transient is False

    def test_backoff_is_capped(self, caller):
        assert caller.backoff_delay(0) == 1.0
        assert caller.backoff_delay(3) == 8.0
        assert caller.backoff_delay(4) == 10.0
        assert caller.backoff_delay(10) == 10.0

    @pytest.mark.asyncio
    async def test_success_resets_consecutive_failures(self, caller):
        failing = CountingOperation(error=ValueError("bad"))
        for _ in range(4):
            with pytest.raises(RemoteCallFailed):
                await caller.execute(failing, "classify_message")
        assert caller.breaker.failure_count == 4

        await caller.execute(CountingOperation(), "classify_message")

        assert caller.breaker.failure_count == 0
        with pytest.raises(RemoteCallFailed):
            await caller.execute(failing, "classify_message")
        assert caller.breaker.state == CircuitState.CLOSED


class TestCircuitBreaker:

    async def _trip(self, caller):
        failing = CountingOperation(error=ValueError("bad"))
        for _ in range(5):
            with pytest.raises(RemoteCallFailed):
                await caller.execute(failing, "classify_message")
        return failing

    @pytest.mark.asyncio
    async def test_open_after_five_failures_fails_fast(self, caller):
        await self._trip(caller)
        operation = CountingOperation()

        with pytest.raises(CircuitOpenError) as exc_info:
            await caller.execute(operation, "classify_message")

        assert operation.calls == 0
        assert caller.breaker.state == CircuitState.OPEN
        assert exc_info.value.retry_after == pytest.approx(60.0)

    @pytest.mark.asyncio
    async def test_still_open_within_reset_window(self, caller, clock):
        await self._trip(caller)
        clock.advance(59)
        operation = CountingOperation()

        with pytest.raises(CircuitOpenError):
            await caller.execute(operation, "classify_message")
        assert operation.calls == 0

    @pytest.mark.asyncio
    async def test_trial_call_after_reset_time_closes_on_success(self, caller, clock):
        await self._trip(caller)
        clock.advance(61)
        operation = CountingOperation(result="recovered")

        assert await caller.execute(operation, "classify_message") == "recovered"
        assert operation.calls == 1
        assert caller.breaker.state == CircuitState.CLOSED
        assert caller.breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_trial_call_is_not_retried_and_reopens(self, caller, clock, sleep):
        await self._trip(caller)
        clock.advance(61)
        operation = CountingOperation(error=TransientRemoteError("still down"))

        with pytest.raises(RemoteCallFailed) as exc_info:
            await caller.execute(operation, "classify_message")

        assert operation.calls == 1
        assert sleep.delays == []
        assert exc_info.value.attempts == 1
        assert caller.breaker.state == CircuitState.OPEN

        blocked = CountingOperation()
        with pytest.raises(CircuitOpenError):
            await caller.execute(blocked, "classify_message")
        assert blocked.calls == 0

    @pytest.mark.asyncio
    async def test_exactly_one_trial_while_half_open(self, caller, clock):
        await self._trip(caller)
        clock.advance(61)

        release = asyncio.Event()

        async def slow_trial():
            await release.wait()
            return "ok"

        trial = asyncio.create_task(caller.execute(slow_trial, "classify_message"))
        await asyncio.sleep(0)

        concurrent = CountingOperation()
        with pytest.raises(CircuitOpenError):
            await caller.execute(concurrent, "classify_message")
        assert concurrent.calls == 0

        release.set()
        assert await trial == "ok"
        assert caller.breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_cancelled_trial_releases_slot(self, caller, clock):
        await self._trip(caller)
        clock.advance(61)

        async def hanging():
            await asyncio.Event().wait()

        trial = asyncio.create_task(caller.execute(hanging, "classify_message"))
        await asyncio.sleep(0)
        trial.cancel()
        with pytest.raises(asyncio.CancelledError):
            await trial

        operation = CountingOperation()
        assert await caller.execute(operation, "classify_message") == "ok"
        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_breakers_are_scoped_per_call_family(self, clock, sleep):
        classification = ResilientCaller("classification", clock=clock, sleep=sleep)
        response = ResilientCaller("response", clock=clock, sleep=sleep)
        await self._trip(classification)

        assert await response.execute(CountingOperation(result="reply"), "generate_response") == "reply"

    @pytest.mark.asyncio
    async def test_metrics_report_open_state(self, caller):
        await self._trip(caller)

        metrics = caller.breaker.get_metrics()

        assert metrics["state"] == "open"
        assert metrics["failure_count"] == 5
        assert metrics["retry_after_seconds"] == pytest.approx(60.0)
