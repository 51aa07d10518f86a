"""Background-refreshed cache for a single value."""

import logging
import threading
from typing import Awaitable, Callable, Generic, TypeVar

from ethsync.worker import BackgroundWorker

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PollingCache(Generic[T]):
    """Holds a value that a background task refreshes every ``interval`` seconds.

    ``read`` returns the last good value immediately and never performs I/O.
    Refresh failures are logged and retried on the next interval; readers
    keep seeing the previous value. Must be created inside a running event
    loop.
    """

    def __init__(
        self,
        initial: T,
        fetch: Callable[[], Awaitable[T]],
        interval: float,
        name: str = "polling-cache",
    ):
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.name = name
        self.interval = interval
        self._fetch = fetch
        self._value = initial
        self._lock = threading.Lock()
        self._worker = BackgroundWorker(self._refresh_loop, name=name)

    @classmethod
    async def create(
        cls,
        fetch: Callable[[], Awaitable[T]],
        interval: float,
        name: str = "polling-cache",
    ) -> "PollingCache[T]":
        """Fetch the initial value, then start refreshing it."""
        initial = await fetch()
        return cls(initial, fetch, interval, name=name)

    def read(self) -> T:
        """Return the most recently fetched value."""
        with self._lock:
            return self._value

    @property
    def closed(self) -> bool:
        return self._worker.closed

    async def close(self) -> None:
        """Stop refreshing. ``read`` keeps returning the last value."""
        await self._worker.close()

    async def __aenter__(self) -> "PollingCache[T]":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def _refresh_loop(self, worker: BackgroundWorker) -> None:
        while await worker.sleep(self.interval):
            try:
                value = await self._fetch()
            except Exception:
                logger.warning("%s: refresh failed", self.name, exc_info=True)
                continue

            if value != self.read():
                with self._lock:
                    self._value = value
