"""
Tests for the retry policy engine and its HTTP convenience variants.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from creatorscope.core.errors import (
    CircuitBreakerOpenError,
    ExternalServiceError,
    JobRunError,
    OperationTimeoutError,
    PayloadDecodeError,
)
from creatorscope.core.retry import (
    RetryOptions,
    RetryOutcome,
    is_resubmittable_error,
    is_retryable_error,
    retry_http_request,
    retry_json,
    run_with_retry,
)


class Flaky:
    """Fails with the given errors in order, then returns `result`."""

    def __init__(self, errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


@pytest.fixture
def no_sleep():
    with patch("creatorscope.core.retry._backoff_sleep", new=AsyncMock()) as sleep:
        yield sleep


class TestRetryableClassification:
    @pytest.mark.parametrize(
        "error, expected",
        [
            (httpx.ConnectError("refused"), True),
            (httpx.ReadTimeout("slow"), True),
            (ConnectionResetError(), True),
            (OperationTimeoutError("late", timeout=1.0), True),
            (asyncio.TimeoutError(), True),
            (ExternalServiceError("boom", status_code=502), True),
            (ExternalServiceError("gone", status_code=404), False),
            (ExternalServiceError("slow down", status_code=429), False),
            (PayloadDecodeError("truncated"), True),
            (CircuitBreakerOpenError("scraper"), False),
            (JobRunError("run-1", "FAILED"), False),
            (ValueError("bug"), False),
        ],
    )
    def test_classification(self, error, expected):
        assert is_retryable_error(error) is expected

    @pytest.mark.parametrize(
        "error, expected",
        [
            (httpx.ConnectError("refused"), True),
            (httpx.ConnectTimeout("no route"), True),
            (ConnectionRefusedError(), True),
            (httpx.ReadTimeout("slow"), False),
            (OperationTimeoutError("late", timeout=1.0), False),
            (ExternalServiceError("boom", status_code=502), False),
            (CircuitBreakerOpenError("scraper"), False),
        ],
    )
    def test_resubmit_classification(self, error, expected):
        assert is_resubmittable_error(error) is expected


class TestRetryOptions:
    def test_defaults(self):
        options = RetryOptions()
        assert options.max_retries == 3
        assert options.initial_delay == 1.0
        assert options.backoff_factor == 2.0
        assert options.retry_condition is is_retryable_error

    @pytest.mark.parametrize(
        "kwargs",
        [{"max_retries": -1}, {"initial_delay": -0.5}, {"backoff_factor": 0.5}],
    )
    def test_invalid_values_rejected(self, kwargs):
        with pytest.raises(ValueError):
            RetryOptions(**kwargs)

    def test_delay_schedule(self):
        options = RetryOptions(initial_delay=0.5, backoff_factor=3.0)
        assert [options.delay_for(n) for n in (1, 2, 3)] == [0.5, 1.5, 4.5]


class TestRunWithRetry:
    @pytest.mark.asyncio
    async def test_success_first_attempt(self, no_sleep):
        outcome = await run_with_retry(Flaky([]))

        assert outcome.success
        assert outcome.data == "ok"
        assert outcome.error is None
        assert outcome.attempts == 1
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_transient_failures_then_success(self, no_sleep):
        work = Flaky([httpx.ConnectError("a"), ExternalServiceError("b", status_code=503)])
        seen = []
        options = RetryOptions(on_retry=lambda error, attempt: seen.append((type(error), attempt)))

        outcome = await run_with_retry(work, options)

        assert outcome.success
        assert outcome.attempts == 3
        assert outcome.retries == 2
        assert seen == [(httpx.ConnectError, 1), (ExternalServiceError, 2)]

    @pytest.mark.asyncio
    async def test_exhaustion_returns_last_failure(self, no_sleep):
        errors = [ExternalServiceError(f"e{i}", status_code=500) for i in range(10)]
        work = Flaky(errors)

        outcome = await run_with_retry(work, RetryOptions(max_retries=2))

        assert not outcome.success
        assert outcome.attempts == 3
        assert work.calls == 3
        assert str(outcome.error) == "e2"

    @pytest.mark.asyncio
    async def test_non_retryable_fails_fast(self, no_sleep):
        work = Flaky([ExternalServiceError("bad request", status_code=400)])

        outcome = await run_with_retry(work, RetryOptions(max_retries=5))

        assert not outcome.success
        assert outcome.attempts == 1
        assert outcome.error.status_code == 400
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_zero_retries_is_single_attempt(self, no_sleep):
        work = Flaky([httpx.ConnectError("down")])

        outcome = await run_with_retry(work, RetryOptions(max_retries=0))

        assert outcome.attempts == 1
        assert work.calls == 1

    @pytest.mark.asyncio
    async def test_backoff_delays(self, no_sleep):
        work = Flaky([httpx.ConnectError("x")] * 3)

        await run_with_retry(work, RetryOptions(max_retries=3, initial_delay=1.0, backoff_factor=2.0))

        assert [c.args[0] for c in no_sleep.await_args_list] == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_open_breaker_is_never_retried(self, no_sleep):
        work = Flaky([CircuitBreakerOpenError("scraper")] * 5)

        outcome = await run_with_retry(work, RetryOptions(max_retries=4))

        assert outcome.attempts == 1
        assert isinstance(outcome.error, CircuitBreakerOpenError)

    @pytest.mark.asyncio
    async def test_custom_retry_condition(self, no_sleep):
        work = Flaky([ValueError("flaky parse")])

        outcome = await run_with_retry(work, RetryOptions(retry_condition=lambda e: True))

        assert outcome.success
        assert outcome.attempts == 2

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, no_sleep):
        async def cancelled():
            raise asyncio.CancelledError

        with pytest.raises(asyncio.CancelledError):
            await run_with_retry(cancelled, RetryOptions(retry_condition=lambda e: True))

    @pytest.mark.asyncio
    async def test_backoff_sleep_is_cancellable(self):
        work = Flaky([httpx.ConnectError("x")] * 5)
        task = asyncio.create_task(run_with_retry(work, RetryOptions(initial_delay=30.0)))

        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert work.calls == 1

    def test_unwrap(self):
        assert RetryOutcome(success=True, attempts=1, data=5).unwrap() == 5
        with pytest.raises(KeyError):
            RetryOutcome(success=False, attempts=2, error=KeyError("x")).unwrap()


def _transport(responses):
    """MockTransport serving the given responses in order."""
    queue = list(responses)
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return queue.pop(0)

    return httpx.MockTransport(handler), requests


class TestHttpVariants:
    @pytest.mark.asyncio
    async def test_server_error_then_success(self, no_sleep):
        transport, requests = _transport([httpx.Response(503), httpx.Response(200, text="fine")])
        async with httpx.AsyncClient(transport=transport, base_url="https://api.test") as client:
            outcome = await retry_http_request(client, "GET", "/v2/actor-runs/1")

        assert outcome.success
        assert outcome.attempts == 2
        assert outcome.data.text == "fine"
        assert len(requests) == 2

    @pytest.mark.asyncio
    async def test_client_error_fails_fast(self, no_sleep):
        transport, requests = _transport([httpx.Response(404), httpx.Response(200)])
        async with httpx.AsyncClient(transport=transport, base_url="https://api.test") as client:
            outcome = await retry_http_request(client, "GET", "/missing")

        assert not outcome.success
        assert outcome.attempts == 1
        assert isinstance(outcome.error, ExternalServiceError)
        assert outcome.error.status_code == 404
        assert len(requests) == 1

    @pytest.mark.asyncio
    async def test_malformed_json_is_retried(self, no_sleep):
        transport, _ = _transport(
            [
                httpx.Response(200, text='{"data": {"id": '),
                httpx.Response(200, json={"data": {"id": "r1"}}),
            ]
        )
        async with httpx.AsyncClient(transport=transport, base_url="https://api.test") as client:
            outcome = await retry_json(client, "GET", "/v2/actor-runs/r1")

        assert outcome.success
        assert outcome.attempts == 2
        assert outcome.data == {"data": {"id": "r1"}}

    @pytest.mark.asyncio
    async def test_malformed_json_not_retried_with_strict_predicate(self, no_sleep):
        transport, _ = _transport([httpx.Response(200, text="<html>")])
        strict = RetryOptions(
            retry_condition=lambda e: is_retryable_error(e) and not isinstance(e, PayloadDecodeError)
        )
        async with httpx.AsyncClient(transport=transport, base_url="https://api.test") as client:
            outcome = await retry_json(client, "GET", "/x", strict)

        assert outcome.attempts == 1
        assert isinstance(outcome.error, PayloadDecodeError)
