"""Building, signing and sending plain transactions."""

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from eth_account.signers.local import LocalAccount
from web3.types import TxParams

from ethsync.chain.backend import ChainBackend
from ethsync.chain.tx import RawTransaction
from ethsync.chain.types import to_hex

logger = logging.getLogger(__name__)

# Receives the unsigned transaction dict and returns the signed raw transaction
TxSigner = Callable[[dict[str, Any]], bytes | str | Awaitable[bytes | str]]


@dataclass
class TransactOpts:
    """Who sends a transaction and which fields are fixed up front.

    Fields left as ``None`` are filled from the backend when sending.
    """

    sender: str
    sign: TxSigner | None = None
    value: int = 0
    nonce: int | None = None
    gas_price: int | None = None
    gas_limit: int | None = None

    @classmethod
    def from_account(cls, account: LocalAccount, **kwargs: Any) -> "TransactOpts":
        """Options that sign with a local private key."""
        return cls(
            sender=account.address,
            sign=lambda tx: account.sign_transaction(tx).raw_transaction,
            **kwargs,
        )


class Transferer:
    """Sends value transfers and raw calls through a ChainBackend.

    Pair it with a nonce tracking backend so that back-to-back transfers
    from one account do not reuse a nonce the node has not seen yet.
    """

    def __init__(self, backend: ChainBackend, chain_id: int | None = None):
        self.backend = backend
        self.chain_id = chain_id  # None signs without replay protection

    async def suggest_gas_limit(self, opts: TransactOpts, to: str | None, data: bytes = b"") -> int:
        """Estimate the gas a transaction from ``opts.sender`` would use."""
        call: TxParams = {"from": opts.sender, "value": opts.value, "data": to_hex(data)}
        if to is not None:
            call["to"] = to
        return await self.backend.estimate_gas(call)

    async def transfer(self, opts: TransactOpts, to: str | None, data: bytes = b"") -> RawTransaction:
        """Fill in missing fields, sign and send a legacy transaction.

        ``to=None`` creates a contract from ``data``. Returns the signed
        transaction as sent.
        """
        if opts.sign is None:
            raise ValueError("No signer to authorize the transaction with")

        nonce = opts.nonce
        if nonce is None:
            nonce = await self.backend.pending_nonce_at(opts.sender)
        gas_price = opts.gas_price
        if gas_price is None:
            gas_price = await self.backend.suggest_gas_price()
        gas_limit = opts.gas_limit
        if gas_limit is None:
            gas_limit = await self.suggest_gas_limit(opts, to, data)

        tx: dict[str, Any] = {
            "nonce": nonce,
            "gasPrice": gas_price,
            "gas": gas_limit,
            "value": opts.value,
            "data": data,
        }
        if to is not None:
            tx["to"] = to
        if self.chain_id is not None:
            tx["chainId"] = self.chain_id

        raw_tx = opts.sign(tx)
        if inspect.isawaitable(raw_tx):
            raw_tx = await raw_tx
        signed = RawTransaction.decode(raw_tx)

        await self.backend.send_transaction(signed.raw)
        logger.debug("Sent transaction %s from %s with nonce %d", to_hex(signed.hash), opts.sender, nonce)
        return signed
