"""
Retry policy engine.

`run_with_retry` executes a zero-argument coroutine function, retrying
failures that the options' `retry_condition` classifies as retryable, with
pure exponential backoff:

    delay(i) = initial_delay * backoff_factor ** (i - 1)    for retry i = 1..max_retries

The engine never raises for a failed unit of work; it returns a
`RetryOutcome` describing what happened. Cancellation is not a failure and
always propagates.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ..observability.logging import get_logger
from ..observability.metrics import counter
from .errors import (
    CircuitBreakerOpenError,
    ExternalServiceError,
    PayloadDecodeError,
)

logger = get_logger(__name__)

T = TypeVar("T")


def is_retryable_error(error: BaseException) -> bool:
    """Classify a failure as transient (retry) or fatal (fail fast)."""
    # Degraded dependency: never hammer it from inside a retry loop
    if isinstance(error, CircuitBreakerOpenError):
        return False

    if isinstance(error, ExternalServiceError):
        return error.is_server_error

    if isinstance(error, PayloadDecodeError):
        return True

    # Covers OperationTimeoutError and asyncio.TimeoutError
    if isinstance(error, TimeoutError):
        return True

    return isinstance(error, (httpx.TransportError, ConnectionError))


def is_resubmittable_error(error: BaseException) -> bool:
    """Narrower classification for non-idempotent submissions.

    Only failures where the request never reached the server are retried. A
    timeout or 5xx after sending may mean the submission was accepted.
    """
    return isinstance(error, (httpx.ConnectError, httpx.ConnectTimeout, ConnectionRefusedError))


@dataclass(frozen=True)
class RetryOptions:
    """Retry configuration, immutable per invocation."""

    max_retries: int = 3
    initial_delay: float = 1.0
    backoff_factor: float = 2.0
    retry_condition: Callable[[BaseException], bool] = is_retryable_error
    on_retry: Callable[[BaseException, int], None] | None = None

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.initial_delay < 0:
            raise ValueError("initial_delay must be >= 0")
        if self.backoff_factor < 1:
            raise ValueError("backoff_factor must be >= 1")

    def delay_for(self, retry_number: int) -> float:
        """Backoff before the given 1-based retry."""
        return self.initial_delay * self.backoff_factor ** (retry_number - 1)


@dataclass(frozen=True)
class RetryOutcome(Generic[T]):
    """Result of a retrying invocation."""

    success: bool
    attempts: int
    data: T | None = None
    error: BaseException | None = None

    @property
    def retries(self) -> int:
        return self.attempts - 1

    def unwrap(self) -> T:
        """Return the result or raise the final failure."""
        if not self.success:
            assert self.error is not None
            raise self.error
        return self.data  # type: ignore[return-value]


async def run_with_retry(
    work: Callable[[], Awaitable[T]],
    options: RetryOptions | None = None,
) -> RetryOutcome[T]:
    """Run `work`, retrying retryable failures with exponential backoff."""
    options = options or RetryOptions()
    attempts = 0

    def before_sleep(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception()
        retry_number = retry_state.attempt_number
        if options.on_retry:
            options.on_retry(error, retry_number)
        counter("retry_attempts_total").add(1)
        logger.info(
            f"Retrying after {options.delay_for(retry_number):.2f}s "
            f"(retry {retry_number}/{options.max_retries})",
            error=repr(error),
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(options.max_retries + 1),
        wait=wait_exponential(multiplier=options.initial_delay, exp_base=options.backoff_factor),
        # Cancellation is a BaseException and must never be retried
        retry=retry_if_exception(
            lambda e: isinstance(e, Exception) and options.retry_condition(e)
        ),
        before_sleep=before_sleep,
        sleep=_backoff_sleep,
        reraise=True,
    )

    try:
        async for attempt in retrying:
            with attempt:
                attempts = attempt.retry_state.attempt_number
                data = await work()
    except Exception as error:
        if options.retry_condition(error):
            counter("retry_exhausted_total").add(1)
            logger.warning("Retries exhausted", attempts=attempts, error=repr(error))
        else:
            logger.debug("Non-retryable failure", attempt=attempts, error=repr(error))
        return RetryOutcome(success=False, attempts=attempts, error=error)

    return RetryOutcome(success=True, attempts=attempts, data=data)


async def _backoff_sleep(delay: float) -> None:
    await asyncio.sleep(delay)


def check_response(response: httpx.Response, service: str = "scraper") -> httpx.Response:
    """Raise `ExternalServiceError` for 4xx/5xx responses."""
    if response.status_code >= 400:
        request = response.request
        raise ExternalServiceError(
            f"{request.method} {request.url.path} returned {response.status_code}",
            status_code=response.status_code,
            service=service,
        )
    return response


def decode_json(response: httpx.Response) -> Any:
    """Parse a JSON body, mapping decode failures to `PayloadDecodeError`."""
    try:
        return response.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise PayloadDecodeError(
            f"Malformed JSON from {response.request.url.path}: {e}"
        ) from e


async def retry_http_request(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    options: RetryOptions | None = None,
    **kwargs: Any,
) -> RetryOutcome[httpx.Response]:
    """Retry a transport call; client errors fail fast, 5xx and network errors retry."""

    async def send() -> httpx.Response:
        response = await client.request(method, url, **kwargs)
        return check_response(response)

    return await run_with_retry(send, options)


async def retry_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    options: RetryOptions | None = None,
    **kwargs: Any,
) -> RetryOutcome[Any]:
    """Like `retry_http_request`, additionally decoding the JSON payload per attempt."""

    async def send_and_decode() -> Any:
        response = await client.request(method, url, **kwargs)
        return decode_json(check_response(response))

    return await run_with_retry(send_and_decode, options)
