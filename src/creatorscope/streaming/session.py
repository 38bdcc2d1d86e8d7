"""
Run session: one run driver task bound to one event channel.

The HTTP layer turns `frames()` into the response body. Whatever ends the
response (normal completion, client disconnect, server shutdown) runs the
generator's cleanup, which cancels the driver.
"""

import asyncio
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable

from ..observability.logging import clear_trace_id, get_logger, set_trace_id
from .channel import EventChannel
from .events import CompleteData, CompleteEvent, ErrorEvent, encode_sse

logger = get_logger(__name__)

KEEPALIVE_FRAME = ": keepalive\n\n"

Driver = Callable[[EventChannel], Awaitable[None]]


class RunSession:
    def __init__(self, driver: Driver, run_id: str | None = None, keepalive_interval: float = 15.0):
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.keepalive_interval = keepalive_interval
        self.channel = EventChannel(self.run_id)
        self._driver = driver
        self._task: asyncio.Task[None] | None = None

    @property
    def task(self) -> asyncio.Task[None] | None:
        return self._task

    def start(self) -> asyncio.Task[None]:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"run-{self.run_id}")
        return self._task

    def cancel(self) -> bool:
        """Cancel the driver. Safe to call any number of times."""
        if self._task is None or self._task.done():
            return False
        logger.info("Cancelling run", run_id=self.run_id)
        return self._task.cancel()

    async def wait(self) -> None:
        """Wait for the driver task to finish, however it ends."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def frames(
        self, is_disconnected: Callable[[], Awaitable[bool]] | None = None
    ) -> AsyncIterator[str]:
        """SSE frames for the response body, with keepalive comments while idle."""
        self.start()
        try:
            while True:
                try:
                    event = await self.channel.get(timeout=self.keepalive_interval)
                except TimeoutError:
                    if is_disconnected is not None and await is_disconnected():
                        logger.info("Client disconnected", run_id=self.run_id)
                        return
                    yield KEEPALIVE_FRAME
                    continue
                if event is None:
                    return
                yield encode_sse(event)
        finally:
            self.cancel()

    async def _run(self) -> None:
        set_trace_id(self.run_id)
        try:
            await self._driver(self.channel)
        except asyncio.CancelledError:
            logger.info("Run cancelled", run_id=self.run_id)
            raise
        except Exception as e:
            logger.exception("Run driver crashed", run_id=self.run_id)
            if not self.channel.closed:
                self.channel.emit(ErrorEvent(data=str(e)))
                self.channel.emit(
                    CompleteEvent(data=CompleteData(success=False, summary={"error": str(e)}))
                )
        finally:
            self.channel.close()
            clear_trace_id()
