"""Single background task with a one-shot close signal and join-on-close."""

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class BackgroundWorker:
    """Runs one coroutine as a background task until it returns or is closed.

    The coroutine receives the worker itself so it can use ``sleep`` for
    delays that end early once close is requested. ``close`` cancels the
    task, which also aborts any fetch it is awaiting, and waits for it to
    finish. Calling ``close`` more than once, or concurrently, is safe.
    """

    def __init__(
        self,
        run: Callable[["BackgroundWorker"], Awaitable[None]],
        name: str | None = None,
    ):
        self.name = name or "background-worker"
        self._closed = asyncio.Event()
        self._shutdown: asyncio.Future[None] | None = None
        self._task = asyncio.create_task(run(self), name=self.name)
        self._task.add_done_callback(self._on_done)

    @property
    def closed(self) -> bool:
        """Whether close has been requested."""
        return self._closed.is_set()

    @property
    def done(self) -> bool:
        """Whether the background task has finished."""
        return self._task.done()

    async def sleep(self, delay: float) -> bool:
        """Wait for ``delay`` seconds.

        Returns True if the delay elapsed, False if close was requested first.
        """
        if self._closed.is_set():
            return False
        try:
            await asyncio.wait_for(self._closed.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return True
        return False

    async def close(self) -> None:
        """Stop the task and wait until it has fully exited."""
        if self._shutdown is None:
            self._shutdown = asyncio.ensure_future(self._stop())
        await asyncio.shield(self._shutdown)

    async def _stop(self) -> None:
        self._closed.set()
        self._task.cancel()
        await asyncio.wait([self._task])

    def _on_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("%s stopped unexpectedly", self.name, exc_info=exc)
