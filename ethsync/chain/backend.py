"""Chain backend capability set and its web3 implementation."""

import asyncio
import logging
from typing import Any, Protocol, runtime_checkable

from hexbytes import HexBytes
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import TransactionNotFound
from web3.types import BlockIdentifier, FilterParams, TxParams

from ethsync.chain.logs import LogSubscription
from ethsync.chain.types import Block, TransactionStatus, to_hex
from ethsync.config import resolve_rpc_url, settings
from ethsync.errors import NotFoundError, TransactionFailedError

logger = logging.getLogger(__name__)


class ChainBackend(Protocol):
    """Everything needed to read state from and submit transactions to a chain."""

    async def code_at(self, account: str, block: BlockIdentifier | None = None) -> bytes: ...

    async def call_contract(self, call: TxParams, block: BlockIdentifier | None = None) -> bytes: ...

    async def pending_code_at(self, account: str) -> bytes: ...

    async def pending_nonce_at(self, account: str) -> int: ...

    async def suggest_gas_price(self) -> int: ...

    async def estimate_gas(self, call: TxParams) -> int: ...

    async def send_transaction(self, raw_tx: bytes | str) -> HexBytes: ...

    async def transaction_receipt(self, tx_hash: bytes | str) -> Any: ...

    async def balance_at(self, account: str, block: BlockIdentifier | None = None) -> int: ...

    async def filter_logs(self, query: FilterParams) -> list[Any]: ...

    async def subscribe_filter_logs(self, query: FilterParams) -> LogSubscription: ...

    async def transaction_by_hash(self, tx_hash: bytes | str) -> tuple[Any, bool]: ...


class ChainReader(Protocol):
    """Head height and block lookups."""

    async def get_block_number(self) -> int: ...

    async def get_block_by_number(self, number: int | None = None) -> Block: ...


@runtime_checkable
class SupportsCommitRollback(Protocol):
    """Backends with manual block production, such as simulated chains."""

    def commit(self) -> None: ...

    def rollback(self) -> None: ...


class Web3Backend:
    """ChainBackend over an AsyncWeb3 HTTP connection."""

    def __init__(self, rpc_url: str | None = None, w3: AsyncWeb3 | None = None):
        if w3 is None:
            w3 = AsyncWeb3(AsyncHTTPProvider(resolve_rpc_url(rpc_url)))
        self.w3 = w3

    async def code_at(self, account: str, block: BlockIdentifier | None = None) -> bytes:
        """Get contract bytecode."""
        code = await self.w3.eth.get_code(self.w3.to_checksum_address(account), block or "latest")
        return bytes(code)

    async def call_contract(self, call: TxParams, block: BlockIdentifier | None = None) -> bytes:
        """Execute eth_call."""
        return bytes(await self.w3.eth.call(call, block or "latest"))

    async def pending_code_at(self, account: str) -> bytes:
        """Get bytecode in the pending state."""
        return await self.code_at(account, "pending")

    async def pending_nonce_at(self, account: str) -> int:
        """Get the next nonce as seen by the node's pending pool."""
        return await self.w3.eth.get_transaction_count(
            self.w3.to_checksum_address(account),
            "pending",
        )

    async def suggest_gas_price(self) -> int:
        """Get current gas price in wei."""
        return await self.w3.eth.gas_price

    async def estimate_gas(self, call: TxParams) -> int:
        """Estimate gas for a call against the pending state."""
        return await self.w3.eth.estimate_gas(call)

    async def send_transaction(self, raw_tx: bytes | str) -> HexBytes:
        """Submit a signed raw transaction and return its hash."""
        return HexBytes(await self.w3.eth.send_raw_transaction(HexBytes(raw_tx)))

    async def transaction_receipt(self, tx_hash: bytes | str) -> Any:
        """Get the receipt of a mined transaction."""
        try:
            return await self.w3.eth.get_transaction_receipt(HexBytes(tx_hash))
        except TransactionNotFound as e:
            raise NotFoundError(f"Receipt for {to_hex(HexBytes(tx_hash))} not found") from e

    async def balance_at(self, account: str, block: BlockIdentifier | None = None) -> int:
        """Get ETH/native balance."""
        return await self.w3.eth.get_balance(
            self.w3.to_checksum_address(account),
            block or "latest",
        )

    async def filter_logs(self, query: FilterParams) -> list[Any]:
        """Run eth_getLogs."""
        return list(await self.w3.eth.get_logs(query))

    async def subscribe_filter_logs(self, query: FilterParams) -> LogSubscription:
        """Stream matching logs by polling eth_getLogs."""
        return LogSubscription(self.filter_logs, self.get_block_number, query)

    async def transaction_by_hash(self, tx_hash: bytes | str) -> tuple[Any, bool]:
        """Get a transaction and whether it is still pending."""
        try:
            tx = await self.w3.eth.get_transaction(HexBytes(tx_hash))
        except TransactionNotFound as e:
            raise NotFoundError(f"Transaction {to_hex(HexBytes(tx_hash))} not found") from e
        return tx, tx.get("blockNumber") is None

    async def get_block_number(self) -> int:
        """Get latest block number."""
        return await self.w3.eth.block_number


async def wait_for_receipt(
    backend: ChainBackend,
    tx_hash: bytes | str,
    poll_interval: float | None = None,
) -> Any:
    """Wait until a transaction is mined and return its successful receipt.

    Simulated backends are committed once instead of polled. Raises
    TransactionFailedError if the receipt status is not successful.
    """
    tx_hex = to_hex(HexBytes(tx_hash))
    logger.info("Waiting for transaction %s", tx_hex)

    if isinstance(backend, SupportsCommitRollback):
        backend.commit()
        return _only_successful(tx_hex, await backend.transaction_receipt(tx_hash))

    interval = poll_interval or settings.receipt_poll_interval
    while True:
        await asyncio.sleep(interval)
        try:
            receipt = await backend.transaction_receipt(tx_hash)
        except NotFoundError:
            continue
        return _only_successful(tx_hex, receipt)


def _only_successful(tx_hex: str, receipt: Any) -> Any:
    if receipt["status"] != TransactionStatus.SUCCESSFUL:
        raise TransactionFailedError(f"Transaction {tx_hex} failed", {"receipt": dict(receipt)})
    logger.info(
        "Transaction %s successfully mined (cumulative gas used: %s)",
        tx_hex,
        receipt.get("cumulativeGasUsed"),
    )
    return receipt
