"""
Upstream resilience: retry only what is retryable, open the breaker on upstream trouble
"""

from unittest.mock import AsyncMock, patch

import pytest

from services.api_adapter_retry import APIAdapterRetry, HttpResponse
from services.circuit_breaker import CircuitBreaker, CircuitState, circuit_breakers
from services.payment_errors import (
    PaymentDeclinedError, PaymentNetworkError, PaymentNotFoundError, ProviderError, RateLimitError,
    UnauthorizedError,
)
from services.retry_service import RetryPolicy, RetryService

NO_DELAY = RetryPolicy(max_attempts=3, initial_delay=0, backoff_multiplier=1, max_delay=0)


class FakeClock:
    def __init__(self):
        self.value = 1000.0

    def __call__(self):
        return self.value


class TestRetryService:

    @pytest.mark.asyncio
    async def test_retryable_error_is_retried_until_success(self):
        calls = AsyncMock(side_effect=[PaymentNetworkError("timeout"), PaymentNetworkError("timeout"), "ok"])
        assert await RetryService.retry_async(calls, NO_DELAY, operation="test") == "ok"
        assert calls.await_count == 3

    @pytest.mark.asyncio
    async def test_non_retryable_error_fails_immediately(self):
        calls = AsyncMock(side_effect=PaymentDeclinedError("card declined"))
        with pytest.raises(PaymentDeclinedError):
            await RetryService.retry_async(calls, NO_DELAY)
        assert calls.await_count == 1

    @pytest.mark.asyncio
    async def test_attempts_are_bounded(self):
        calls = AsyncMock(side_effect=RateLimitError("slow down"))
        with pytest.raises(RateLimitError):
            await RetryService.retry_async(calls, NO_DELAY)
        assert calls.await_count == 3

    def test_backoff_schedule(self):
        policy = RetryPolicy(max_attempts=5, initial_delay=1.0, backoff_multiplier=2.0, max_delay=5.0)
        assert [policy.delay_for(n) for n in range(1, 5)] == [1.0, 2.0, 4.0, 5.0]


class TestCircuitBreaker:

    @pytest.mark.asyncio
    async def test_opens_after_threshold_and_blocks(self):
        breaker = CircuitBreaker("unit", failure_threshold=2, recovery_timeout=60, clock=FakeClock())
        failing = AsyncMock(side_effect=PaymentNetworkError("down"))

        for _ in range(2):
            with pytest.raises(PaymentNetworkError):
                await breaker.async_call(failing)
        assert breaker.state == CircuitState.OPEN

        with pytest.raises(ProviderError) as exc_info:
            await breaker.async_call(failing)
        assert exc_info.value.retryable is True
        assert failing.await_count == 2

    @pytest.mark.asyncio
    async def test_half_open_trial_closes_on_success(self):
        clock = FakeClock()
        breaker = CircuitBreaker("unit", failure_threshold=1, recovery_timeout=60, clock=clock)
        with pytest.raises(PaymentNetworkError):
            await breaker.async_call(AsyncMock(side_effect=PaymentNetworkError("down")))

        clock.value += 61
        assert await breaker.async_call(AsyncMock(return_value="ok")) == "ok"
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_declines_do_not_trip_the_breaker(self):
        breaker = CircuitBreaker("unit", failure_threshold=1, recovery_timeout=60, clock=FakeClock())
        with pytest.raises(PaymentDeclinedError):
            await breaker.async_call(AsyncMock(side_effect=PaymentDeclinedError("declined")))
        assert breaker.state == CircuitState.CLOSED


class _Adapter(APIAdapterRetry):
    service_name = "unit_adapter"

    def _secrets(self):
        return ["hunter2-secret"]


class TestHttpErrorMapping:

    @pytest.mark.parametrize("status,error_type", [
        (401, UnauthorizedError),
        (403, UnauthorizedError),
        (404, PaymentNotFoundError),
        (402, PaymentDeclinedError),
        (429, RateLimitError),
        (500, ProviderError),
    ])
    def test_status_codes(self, status, error_type):
        error = _Adapter()._map_http_error(HttpResponse(status=status, text="boom"), "op")
        assert isinstance(error, error_type)

    def test_known_secrets_are_redacted(self):
        error = _Adapter()._map_http_error(HttpResponse(status=400, text="bad key hunter2-secret"), "op")
        assert "hunter2-secret" not in error.message

    @pytest.mark.asyncio
    async def test_server_errors_surface_without_retry(self):
        adapter = _Adapter(retry_policy=NO_DELAY)
        sender = AsyncMock(return_value=HttpResponse(status=503, text="unavailable"))
        with patch.object(_Adapter, "_send", sender):
            with pytest.raises(ProviderError):
                await adapter._request("GET", "https://example.test", "op")
        assert sender.await_count == 1
        assert circuit_breakers["unit_adapter"].failure_count == 1

    @pytest.mark.asyncio
    async def test_network_errors_are_retried(self):
        adapter = _Adapter(retry_policy=NO_DELAY)
        sender = AsyncMock(side_effect=[PaymentNetworkError("reset"), HttpResponse(status=200, text='{"ok": true}')])
        with patch.object(_Adapter, "_send", sender):
            response = await adapter._request("GET", "https://example.test", "op")
        assert response.json() == {"ok": True}
        assert sender.await_count == 2
