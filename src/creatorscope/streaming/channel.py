"""
Server-side event channel: one ordered, unbounded queue per run.
"""

import asyncio
from collections.abc import AsyncIterator

from ..core.errors import StreamClosedError
from ..observability.logging import get_logger
from ..observability.metrics import counter
from .events import CompleteEvent, StreamEvent

logger = get_logger(__name__)

_END = None


class EventChannel:
    """Ordered hand-off from a run driver to the stream writer.

    `emit` never blocks, so a driver can publish from inside a critical
    section. Delivery order is emission order. The final summary `complete`
    (the one without a keyword) closes the channel; each keyword may complete
    at most once.
    """

    def __init__(self, run_id: str | None = None):
        self.run_id = run_id
        self._queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue()
        self._closed = False
        self._completed_keywords: set[str] = set()
        self.history: list[StreamEvent] = []

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, event: StreamEvent) -> None:
        if self._closed:
            raise StreamClosedError(f"Stream for run {self.run_id} is closed")

        final = False
        if isinstance(event, CompleteEvent):
            keyword = event.data.keyword
            if keyword is None:
                final = True
            elif keyword in self._completed_keywords:
                raise StreamClosedError(f"Keyword '{keyword}' already completed")
            else:
                self._completed_keywords.add(keyword)

        self.history.append(event)
        self._queue.put_nowait(event)
        counter("stream_events_total").add(1, {"type": event.type})

        if final:
            self.close()

    def close(self) -> None:
        """End the stream; idempotent."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_END)

    async def get(self, timeout: float | None = None) -> StreamEvent | None:
        """Next event, or None once the stream has ended.

        Raises TimeoutError if nothing arrives within `timeout` seconds.
        """
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout=timeout)

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[StreamEvent]:
        while True:
            event = await self.get()
            if event is _END:
                return
            yield event
