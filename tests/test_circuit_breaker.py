import time

import httpx
import pytest

from partcall.circuit_breaker import MODEL_CALL_ERRORS, CircuitBreaker, CircuitOpenError, llm_breaker


class TestCircuitBreaker:
    def test_starts_closed(self):
        cb = CircuitBreaker()
        assert cb.should_try() is True
        assert cb.is_open is False
        assert cb.retry_in == 0.0

    def test_stays_closed_below_threshold(self):
        cb = CircuitBreaker(failure_threshold=3)
        cb.record_failure()
        cb.record_failure()
        assert cb.should_try() is True

    def test_opens_at_threshold(self):
        cb = CircuitBreaker(failure_threshold=3, cooldown_seconds=30.0)
        for _ in range(3):
            cb.record_failure()
        assert cb.is_open is True
        assert 0 < cb.retry_in <= 30.0

    def test_half_open_after_cooldown(self):
        cb = CircuitBreaker(failure_threshold=1, cooldown_seconds=0.0)
        cb.record_failure()
        assert cb.should_try() is True

    def test_closes_on_success(self):
        cb = CircuitBreaker(failure_threshold=2)
        cb.record_failure()
        cb.record_failure()
        cb._opened_at = time.monotonic() - 100
        assert cb.should_try() is True
        cb.record_success()
        assert cb._consecutive_failures == 0
        assert cb._opened_at is None

    def test_failure_after_cooldown_reopens(self):
        cb = CircuitBreaker(failure_threshold=2, cooldown_seconds=30.0)
        cb.record_failure()
        cb.record_failure()
        cb._opened_at = time.monotonic() - 100
        assert cb.should_try() is True
        cb.record_failure()
        assert cb.should_try() is False

    def test_success_resets_failures(self):
        cb = CircuitBreaker(failure_threshold=3)
        cb.record_failure()
        cb.record_failure()
        cb.record_success()
        cb.record_failure()
        assert cb.should_try() is True


class TestCall:
    @pytest.mark.asyncio
    async def test_returns_result(self):
        cb = CircuitBreaker()

        async def ok(value):
            return value

        assert await cb.call(ok, {"intent": "yes"}) == {"intent": "yes"}

    @pytest.mark.asyncio
    async def test_counts_model_errors_then_opens(self):
        cb = CircuitBreaker(failure_threshold=2)
        calls = []

        async def broken():
            calls.append(1)
            raise httpx.ConnectError("refused")

        for _ in range(2):
            with pytest.raises(httpx.ConnectError):
                await cb.call(broken)
        with pytest.raises(CircuitOpenError, match="LLM circuit breaker open"):
            await cb.call(broken)
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_other_errors_pass_through_uncounted(self):
        cb = CircuitBreaker(failure_threshold=1)

        async def buggy():
            raise RuntimeError("caller bug")

        with pytest.raises(RuntimeError):
            await cb.call(buggy)
        assert cb.is_open is False

    @pytest.mark.asyncio
    async def test_success_closes_after_cooldown(self):
        cb = CircuitBreaker(failure_threshold=1, cooldown_seconds=0.0)
        cb.record_failure()

        async def ok():
            return "fine"

        assert await cb.call(ok) == "fine"
        assert cb._opened_at is None


def test_llm_breaker_defaults():
    cb = llm_breaker()
    assert cb.failure_threshold == 3
    assert cb.cooldown_seconds == 30.0
    assert cb.label == "LLM"
    assert cb.trip_on == MODEL_CALL_ERRORS
    assert issubclass(httpx.ReadTimeout, MODEL_CALL_ERRORS)
