"""Decoded block and transaction models."""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any


def to_hex(value: Any) -> str:
    """Render bytes-like values as 0x-prefixed hex, pass strings through."""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return str(value)


class TransactionStatus(IntEnum):
    """Receipt status of a mined transaction."""

    FAILED = 0
    SUCCESSFUL = 1


@dataclass
class Transaction:
    """Transaction as it appears in a block, enriched with receipt data."""

    hash: str
    block_number: int
    sender: str
    to: str | None  # None means contract creation
    nonce: int
    value: int
    gas_limit: int
    gas_price: int
    input: bytes
    transaction_index: int

    # Filled from the receipt
    gas_used: int | None = None
    status: TransactionStatus | None = None
    contract_address: str | None = None

    @property
    def is_contract_creation(self) -> bool:
        return self.to is None

    @property
    def succeeded(self) -> bool:
        return self.status == TransactionStatus.SUCCESSFUL


@dataclass
class Block:
    """Block with its transactions."""

    number: int
    hash: str
    parent_hash: str
    miner: str
    timestamp: int
    gas_limit: int
    gas_used: int
    difficulty: int = 0
    extra_data: bytes = b""
    transactions: list[Transaction] = field(default_factory=list)

    def __str__(self) -> str:
        return f"Block(#{self.number} {self.hash} txs={len(self.transactions)})"
