"""
Client side of the progress stream.

`SseDecoder` turns arbitrarily split text chunks into whole events.
`StreamingClient` POSTs a run submission and consumes the response body,
either as an async iterator (`events()`) or through callbacks (`start()`),
which returns a `StreamHandle` whose `cancel()` closes the connection. The
server treats that disconnect as the cancellation signal for the run.
"""

import asyncio
import inspect
from collections.abc import AsyncIterator, Callable
from typing import Any

import httpx
from pydantic import ValidationError as PydanticValidationError

from ..core.errors import ExternalServiceError
from ..observability.logging import get_logger
from .events import (
    CompleteData,
    CompleteEvent,
    ErrorEvent,
    OutputEvent,
    ProgressData,
    ProgressEvent,
    StreamEvent,
    decode_event,
)

logger = get_logger(__name__)


class SseDecoder:
    """Incremental SSE record decoder.

    Records are separated by a blank line. Only `data:` fields are read;
    comments (keepalives) and other fields are ignored. A record whose
    payload is not a valid event is skipped with a warning.
    """

    def __init__(self):
        self._buffer = ""

    def feed(self, chunk: str) -> list[StreamEvent]:
        self._buffer += chunk
        if "\r" in self._buffer and not self._buffer.endswith("\r"):
            self._buffer = self._buffer.replace("\r\n", "\n")
        *records, self._buffer = self._buffer.split("\n\n")
        events = []
        for record in records:
            event = self._parse(record)
            if event is not None:
                events.append(event)
        return events

    def finish(self) -> list[StreamEvent]:
        """End of input: an unterminated trailing fragment is discarded."""
        if self._buffer.strip():
            logger.debug("Discarding unterminated SSE fragment", size=len(self._buffer))
        self._buffer = ""
        return []

    def _parse(self, record: str) -> StreamEvent | None:
        data_lines = []
        for line in record.split("\n"):
            if line.startswith("data:"):
                value = line[5:]
                data_lines.append(value[1:] if value.startswith(" ") else value)
        if not data_lines:
            return None

        payload = "\n".join(data_lines)
        try:
            return decode_event(payload)
        except PydanticValidationError as e:
            logger.warning("Skipping malformed stream record", payload=payload[:200], error=str(e))
            return None


Callback = Callable[..., Any]


async def _call(callback: Callback | None, *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class StreamHandle:
    """Handle on a callback-driven stream consumption."""

    def __init__(self, task: asyncio.Task[None]):
        self._task = task
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def done(self) -> bool:
        return self._task.done()

    def cancel(self) -> None:
        """Stop reading and close the connection; idempotent."""
        if self._cancelled:
            return
        self._cancelled = True
        if not self._task.done():
            self._task.cancel()

    async def wait(self) -> None:
        await asyncio.gather(self._task, return_exceptions=True)


class StreamingClient:
    def __init__(
        self,
        url: str,
        body: dict[str, Any],
        http_client: httpx.AsyncClient | None = None,
        connect_timeout: float = 10.0,
    ):
        self.url = url
        self.body = body
        self._http_client = http_client
        self._connect_timeout = connect_timeout

    async def events(self) -> AsyncIterator[StreamEvent]:
        """Yield events as they arrive until the server ends the stream."""
        owns_client = self._http_client is None
        client = self._http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(None, connect=self._connect_timeout)
        )
        try:
            async with client.stream(
                "POST", self.url, json=self.body, headers={"Accept": "text/event-stream"}
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise ExternalServiceError(
                        _error_message(response), status_code=response.status_code, service="stream"
                    )

                decoder = SseDecoder()
                async for chunk in response.aiter_text():
                    for event in decoder.feed(chunk):
                        yield event
                decoder.finish()
        finally:
            if owns_client:
                await client.aclose()

    def start(
        self,
        on_output: Callable[[str, str | None], Any] | None = None,
        on_error: Callable[[str, str | None], Any] | None = None,
        on_progress: Callable[[ProgressData], Any] | None = None,
        on_complete: Callable[[CompleteData], Any] | None = None,
        on_stream_end: Callable[[], Any] | None = None,
    ) -> StreamHandle:
        """Consume the stream in the background, dispatching each event to its callback.

        Transport failures are reported through `on_error`; `on_stream_end`
        fires exactly once however consumption ends, including cancellation.
        """

        async def consume() -> None:
            try:
                async for event in self.events():
                    if isinstance(event, OutputEvent):
                        await _call(on_output, event.data, event.keyword)
                    elif isinstance(event, ErrorEvent):
                        await _call(on_error, event.data, event.keyword)
                    elif isinstance(event, ProgressEvent):
                        await _call(on_progress, event.data)
                    elif isinstance(event, CompleteEvent):
                        await _call(on_complete, event.data)
            except (httpx.HTTPError, ExternalServiceError) as e:
                logger.warning("Stream consumption failed", url=self.url, error=str(e))
                await _call(on_error, str(e), None)
            finally:
                await _call(on_stream_end)

        return StreamHandle(asyncio.create_task(consume()))


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return f"HTTP {response.status_code}"
