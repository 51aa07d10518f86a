"""Nonce-tracking backend decorator.

The node's pending pool often lags behind transactions this process has
already sent, so ``eth_getTransactionCount(..., "pending")`` can hand out a
nonce that is already taken. ``NonceTrackingBackend`` keeps a local
watermark of the next nonce for a fixed set of accounts and returns the
maximum of the node's value and the watermark.

The decorator is not safe for unsynchronized concurrent use: a
``pending_nonce_at`` / ``send_transaction`` pair for one account must be
serialized by the caller, otherwise two callers can obtain the same nonce.
``SerializedSender`` provides that serialization when it is needed.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Iterable

from hexbytes import HexBytes
from web3 import Web3
from web3.types import BlockIdentifier, FilterParams, TxParams

from ethsync.chain.backend import ChainBackend, SupportsCommitRollback
from ethsync.chain.logs import LogSubscription
from ethsync.chain.tx import RawTransaction

logger = logging.getLogger(__name__)


class NonceTrackingBackend:
    """ChainBackend decorator that keeps nonces of watched accounts gap-free."""

    def __init__(self, inner: ChainBackend, accounts: Iterable[str]):
        self._inner = inner
        self._nonces: dict[str, int] = {
            Web3.to_checksum_address(account): 0 for account in accounts
        }

    @property
    def inner(self) -> ChainBackend:
        return self._inner

    @property
    def watched(self) -> frozenset[str]:
        """Checksum addresses whose nonces are tracked."""
        return frozenset(self._nonces)

    async def pending_nonce_at(self, account: str) -> int:
        """Return the next nonce, never lower than what this process has sent."""
        nonce = await self._inner.pending_nonce_at(account)

        key = Web3.to_checksum_address(account)
        stored = self._nonces.get(key)
        if stored is None:
            return nonce

        if nonce > stored:
            self._nonces[key] = nonce
            return nonce
        return stored

    async def send_transaction(self, raw_tx: bytes | str) -> HexBytes:
        """Submit a signed transaction and advance the signer's watermark."""
        tx_hash = await self._inner.send_transaction(raw_tx)
        self._advance(raw_tx)
        return tx_hash

    def _advance(self, raw_tx: bytes | str) -> None:
        # The transaction is already sent, only the watermark update is skipped
        try:
            tx = RawTransaction.decode(raw_tx)
            sender = tx.sender()
        except Exception:
            logger.debug("Cannot recover sender of sent transaction, nonce not tracked", exc_info=True)
            return

        stored = self._nonces.get(sender)
        if stored is None:
            return
        if tx.nonce + 1 > stored:
            self._nonces[sender] = tx.nonce + 1

    async def code_at(self, account: str, block: BlockIdentifier | None = None) -> bytes:
        return await self._inner.code_at(account, block)

    async def call_contract(self, call: TxParams, block: BlockIdentifier | None = None) -> bytes:
        return await self._inner.call_contract(call, block)

    async def pending_code_at(self, account: str) -> bytes:
        return await self._inner.pending_code_at(account)

    async def suggest_gas_price(self) -> int:
        return await self._inner.suggest_gas_price()

    async def estimate_gas(self, call: TxParams) -> int:
        return await self._inner.estimate_gas(call)

    async def transaction_receipt(self, tx_hash: bytes | str) -> Any:
        return await self._inner.transaction_receipt(tx_hash)

    async def balance_at(self, account: str, block: BlockIdentifier | None = None) -> int:
        return await self._inner.balance_at(account, block)

    async def filter_logs(self, query: FilterParams) -> list[Any]:
        return await self._inner.filter_logs(query)

    async def subscribe_filter_logs(self, query: FilterParams) -> LogSubscription:
        return await self._inner.subscribe_filter_logs(query)

    async def transaction_by_hash(self, tx_hash: bytes | str) -> tuple[Any, bool]:
        return await self._inner.transaction_by_hash(tx_hash)


class SimulatedNonceTrackingBackend(NonceTrackingBackend):
    """NonceTrackingBackend over a backend that can commit and roll back blocks."""

    def __init__(self, inner: SupportsCommitRollback, accounts: Iterable[str]):
        super().__init__(inner, accounts)  # type: ignore[arg-type]
        self._simulated = inner

    def commit(self) -> None:
        """Mine pending transactions on the inner backend."""
        self._simulated.commit()

    def rollback(self) -> None:
        """Discard pending state on the inner backend."""
        self._simulated.rollback()


def track_nonces(inner: ChainBackend, accounts: Iterable[str]) -> NonceTrackingBackend:
    """Wrap ``inner`` so nonces of ``accounts`` are tracked locally.

    If the inner backend can commit and roll back (a simulated chain), the
    returned object exposes ``commit`` and ``rollback`` as well.
    """
    if isinstance(inner, SupportsCommitRollback):
        return SimulatedNonceTrackingBackend(inner, accounts)
    return NonceTrackingBackend(inner, accounts)


Signer = Callable[[int], bytes | str | Awaitable[bytes | str]]


class SerializedSender:
    """Serializes nonce lookup, signing and sending per account.

    ``send`` holds a per-account lock around the whole sequence, so
    concurrent callers always receive consecutive nonces.
    """

    def __init__(self, backend: NonceTrackingBackend):
        self.backend = backend
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, account: str) -> asyncio.Lock:
        key = Web3.to_checksum_address(account)
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def send(self, account: str, sign: Signer) -> HexBytes:
        """Sign a transaction for the next nonce of ``account`` and send it.

        ``sign`` receives the nonce and returns the signed raw transaction,
        either directly or as an awaitable.
        """
        async with self._lock_for(account):
            nonce = await self.backend.pending_nonce_at(account)
            raw_tx = sign(nonce)
            if inspect.isawaitable(raw_tx):
                raw_tx = await raw_tx
            return await self.backend.send_transaction(raw_tx)
