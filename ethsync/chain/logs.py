"""Log filtering and poll-based log subscriptions."""

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Mapping

from ethsync.config import settings
from ethsync.worker import BackgroundWorker

logger = logging.getLogger(__name__)

LOG_BUFFER_SIZE = 128


def _norm(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return str(value).lower()


def match_log(log: Mapping[str, Any], query: Mapping[str, Any]) -> bool:
    """Check a log against the address and topic rules of a filter query.

    A ``None`` or empty topic position matches anything; a list at a
    position matches any of its entries.
    """
    if log.get("removed"):
        return False

    address = query.get("address")
    if address:
        wanted = [address] if isinstance(address, (str, bytes)) else address
        if _norm(log.get("address", "")) not in {_norm(a) for a in wanted}:
            return False

    rules = query.get("topics") or []
    log_topics = [_norm(t) for t in log.get("topics", [])]
    if len(rules) > len(log_topics):
        return False

    for position, rule in enumerate(rules):
        if not rule:
            continue
        options = [rule] if isinstance(rule, (str, bytes)) else rule
        if log_topics[position] not in {_norm(o) for o in options}:
            return False
    return True


def filter_logs(logs: Iterable[Mapping[str, Any]], query: Mapping[str, Any]) -> list[Mapping[str, Any]]:
    """Return the logs matching ``query``, preserving order."""
    return [log for log in logs if log is not None and match_log(log, query)]


class LogSubscription:
    """Streams logs matching a filter query by polling block ranges.

    HTTP nodes cannot push logs, so the subscription walks forward from the
    query's ``fromBlock`` (or the head at start) in chunks of at most
    ``max_range`` blocks. When the query has a ``toBlock`` the subscription
    ends once that block has been scanned.
    """

    def __init__(
        self,
        filter_logs: Callable[[dict[str, Any]], Awaitable[list[Any]]],
        block_number: Callable[[], Awaitable[int]],
        query: Mapping[str, Any],
        poll_interval: float | None = None,
        max_range: int | None = None,
    ):
        self._filter_logs = filter_logs
        self._block_number = block_number
        self.query = dict(query)
        self.poll_interval = poll_interval or settings.log_poll_interval
        self.max_range = max_range or settings.log_max_block_range
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=LOG_BUFFER_SIZE)
        self._end = object()
        self._worker = BackgroundWorker(self._poll_loop, name="log-subscription")

    def __aiter__(self) -> AsyncIterator[Any]:
        return self.logs()

    async def logs(self) -> AsyncIterator[Any]:
        """Yield matching logs until the subscription ends."""
        while True:
            item = await self._queue.get()
            if item is self._end:
                self._queue.put_nowait(self._end)
                return
            yield item

    async def unsubscribe(self) -> None:
        """Stop polling and end iteration."""
        await self._worker.close()
        self._finish()

    close = unsubscribe

    def _finish(self) -> None:
        # Drop undelivered logs so the end marker always fits
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is self._end:
                break
        self._queue.put_nowait(self._end)

    async def _poll_loop(self, worker: BackgroundWorker) -> None:
        cursor: int | None = _block_arg(self.query.get("fromBlock"))
        last: int | None = _block_arg(self.query.get("toBlock"))

        while True:
            try:
                head = await self._block_number()
            except Exception:
                logger.warning("Log subscription: block number lookup failed", exc_info=True)
                if not await worker.sleep(self.poll_interval):
                    return
                continue

            if cursor is None:
                cursor = head
            upper = head if last is None else min(head, last)

            if cursor <= upper:
                end = min(cursor + self.max_range - 1, upper)
                try:
                    logs = await self._filter_logs({**self.query, "fromBlock": cursor, "toBlock": end})
                except Exception:
                    logger.warning("Log subscription: filter %d-%d failed", cursor, end, exc_info=True)
                    if not await worker.sleep(self.poll_interval):
                        return
                    continue

                for log in logs:
                    await self._queue.put(log)
                cursor = end + 1
                if end < upper:
                    continue

            if last is not None and cursor > last:
                await self._queue.put(self._end)
                return
            if not await worker.sleep(self.poll_interval):
                return


def _block_arg(value: Any) -> int | None:
    if value is None or value in ("latest", "pending", "safe", "finalized"):
        return None
    if value == "earliest":
        return 0
    if isinstance(value, str):
        return int(value, 16)
    return int(value)
