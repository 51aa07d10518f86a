"""Ordered stream of confirmed blocks."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator

from ethsync.chain.backend import ChainReader
from ethsync.chain.rpc import RPCClient
from ethsync.chain.types import Block
from ethsync.config import settings
from ethsync.errors import NotFoundError
from ethsync.worker import BackgroundWorker

logger = logging.getLogger(__name__)

_END = object()


@dataclass
class BlockSourceConfig:
    """Where the stream starts and how deep blocks must be buried."""

    start_block: int | None = None  # None: head minus confirmations
    confirmations: int = field(default_factory=lambda: settings.confirmations)
    retry_delay: float = field(default_factory=lambda: settings.retry_delay)  # seconds

    def __post_init__(self) -> None:
        if self.start_block is not None and self.start_block < 0:
            raise ValueError(f"start_block must not be negative, got {self.start_block}")
        if self.confirmations < 0:
            raise ValueError(f"confirmations must not be negative, got {self.confirmations}")
        if self.retry_delay <= 0:
            raise ValueError(f"retry_delay must be positive, got {self.retry_delay}")


def needs_head_refresh(current: int | None, head: int | None, confirmations: int) -> bool:
    """Whether the cached head may be too low to confirm the next block.

    Without confirmations the head is never needed. Otherwise it is
    re-read only near the frontier, so a source far behind the head does
    not query it on every block.
    """
    if confirmations == 0:
        return False
    if head is None or head < confirmations:
        return True
    return current is not None and current + confirmations > head


class BlockSource:
    """Pushes blocks from a ChainReader in strictly increasing order.

    Every block is emitted once the head was at least ``confirmations``
    blocks above it when the block was fetched. Reorgs are not handled:
    emitted blocks are never retracted. Delivery waits until the consumer
    has taken each block, which is the only backpressure.

    Usage:
        async with BlockSource.connect(config=BlockSourceConfig(confirmations=12)) as source:
            async for block in source:
                ...
    """

    def __init__(
        self,
        reader: ChainReader,
        config: BlockSourceConfig | None = None,
        owns_reader: bool = False,
    ):
        self.config = config or BlockSourceConfig()
        self._reader = reader
        self._owns_reader = owns_reader
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        self._shutdown: asyncio.Future | None = None
        self._worker = BackgroundWorker(self._run, name="block-source")

    @classmethod
    def connect(
        cls,
        rpc_url: str | None = None,
        config: BlockSourceConfig | None = None,
    ) -> "BlockSource":
        """Stream blocks from the node at ``rpc_url``."""
        return cls(RPCClient(rpc_url), config, owns_reader=True)

    def __aiter__(self) -> AsyncIterator[Block]:
        return self.blocks()

    async def blocks(self) -> AsyncIterator[Block]:
        """Yield blocks until the source is closed."""
        while True:
            item = await self._queue.get()
            if item is _END:
                # Leave the marker for other consumers
                self._queue.put_nowait(_END)
                return
            self._queue.task_done()
            yield item

    async def close(self) -> None:
        """Stop fetching, end the stream and release an owned reader.

        Concurrent and repeated calls all return only after the first one
        has finished.
        """
        if self._shutdown is None:
            self._shutdown = asyncio.ensure_future(self._stop())
        await asyncio.shield(self._shutdown)

    async def _stop(self) -> None:
        await self._worker.close()
        self._close_stream()
        if self._owns_reader:
            await self._reader.close()  # type: ignore[attr-defined]

    async def __aenter__(self) -> "BlockSource":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _close_stream(self) -> None:
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_END)

    async def _deliver(self, block: Block) -> None:
        await self._queue.put(block)
        await self._queue.join()

    async def _run(self, worker: BackgroundWorker) -> None:
        confirmations = self.config.confirmations
        delay = self.config.retry_delay
        current = self.config.start_block
        head: int | None = None

        while True:
            if needs_head_refresh(current, head, confirmations):
                try:
                    head = await self._reader.get_block_number()
                except Exception:
                    logger.warning("Failed to get head block number", exc_info=True)
                    if not await worker.sleep(delay):
                        return
                    continue

                if needs_head_refresh(current, head, confirmations):
                    logger.debug("Head %s too low for block %s, waiting", head, current)
                    if not await worker.sleep(delay):
                        return
                    continue

            if current is None and head is not None:
                current = head - confirmations

            try:
                block = await self._reader.get_block_by_number(current)
            except NotFoundError:
                logger.debug("Block %s not available yet", "latest" if current is None else current)
                if not await worker.sleep(delay):
                    return
                continue
            except Exception:
                logger.warning("Failed to get block %s", current, exc_info=True)
                if not await worker.sleep(delay):
                    return
                continue

            current = block.number + 1
            await self._deliver(block)
