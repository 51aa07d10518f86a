"""Shared test doubles and signing helpers."""

import asyncio
from typing import Any

import pytest
from eth_account import Account
from eth_utils import keccak
from hexbytes import HexBytes

from ethsync.chain.logs import LogSubscription
from ethsync.chain.types import Block
from ethsync.errors import NotFoundError

KEY_A = "0x" + "11" * 32
KEY_B = "0x" + "22" * 32
ACCOUNT_A = Account.from_key(KEY_A).address
ACCOUNT_B = Account.from_key(KEY_B).address
RECIPIENT = Account.from_key("0x" + "33" * 32).address

CHAIN_ID = 1337


def sign_transfer(
    key: str,
    nonce: int,
    to: str | None = RECIPIENT,
    value: int = 1,
    gas: int = 21000,
    gas_price: int = 1,
    data: bytes = b"",
    chain_id: int = CHAIN_ID,
) -> bytes:
    """Sign a legacy value transfer and return the raw transaction."""
    tx: dict[str, Any] = {
        "nonce": nonce,
        "gasPrice": gas_price,
        "gas": gas,
        "value": value,
        "data": data,
        "chainId": chain_id,
    }
    if to is not None:
        tx["to"] = to
    return bytes(Account.sign_transaction(tx, key).raw_transaction)


def sign_set_code(nonce: int, authority_nonce: int, key: str = KEY_A):
    """Sign an EIP-7702 transaction that delegates the signer to RECIPIENT."""
    auth = Account.sign_authorization({"chainId": CHAIN_ID, "address": RECIPIENT, "nonce": authority_nonce}, key)
    return Account.sign_transaction(
        {
            "chainId": CHAIN_ID,
            "nonce": nonce,
            "gas": 100000,
            "maxFeePerGas": 2000,
            "maxPriorityFeePerGas": 1,
            "to": RECIPIENT,
            "value": 0,
            "data": b"",
            "accessList": [],
            "authorizationList": [auth],
        },
        key,
    )


def deploy_code(runtime: bytes) -> bytes:
    """Init code that deploys ``runtime`` unchanged."""
    # PUSH1 len DUP1 PUSH1 11 PUSH1 0 CODECOPY PUSH1 0 RETURN
    return bytes([0x60, len(runtime), 0x80, 0x60, 0x0B, 0x60, 0x00, 0x39, 0x60, 0x00, 0xF3]) + runtime


def log_emitter(topic: str) -> bytes:
    """Runtime code that emits one empty log with ``topic`` on every call."""
    # PUSH32 topic PUSH1 0 PUSH1 0 LOG1 STOP
    return b"\x7f" + bytes(HexBytes(topic)) + bytes([0x60, 0x00, 0x60, 0x00, 0xA1, 0x00])


def make_block(number: int) -> Block:
    return Block(
        number=number,
        hash="0x" + keccak(number.to_bytes(8, "big")).hex(),
        parent_hash="0x" + "00" * 32,
        miner="0x" + "00" * 20,
        timestamp=1_600_000_000 + number * 12,
        gas_limit=30_000_000,
        gas_used=0,
    )


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it is true or fail after ``timeout``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class FakeBackend:
    """ChainBackend with scripted answers and no commit/rollback."""

    def __init__(self, nonce: int = 0):
        self.nonce = nonce
        self.sent: list[bytes] = []
        self.send_error: Exception | None = None
        self.nonce_error: Exception | None = None
        self.receipts: dict[str, Any] = {}

    async def code_at(self, account, block=None):
        return b"\x60\x00"

    async def call_contract(self, call, block=None):
        return b"\x01"

    async def pending_code_at(self, account):
        return b""

    async def pending_nonce_at(self, account):
        if self.nonce_error is not None:
            raise self.nonce_error
        return self.nonce

    async def suggest_gas_price(self):
        return 42

    async def estimate_gas(self, call):
        return 21000

    async def send_transaction(self, raw_tx):
        if self.send_error is not None:
            raise self.send_error
        raw = bytes(HexBytes(raw_tx))
        self.sent.append(raw)
        return HexBytes(keccak(raw))

    async def transaction_receipt(self, tx_hash):
        key = HexBytes(tx_hash).hex()
        if key not in self.receipts:
            raise NotFoundError("receipt not found")
        return self.receipts[key]

    async def balance_at(self, account, block=None):
        return 10**18

    async def filter_logs(self, query):
        return []

    async def subscribe_filter_logs(self, query):
        return LogSubscription(self.filter_logs, self.block_number, query)

    async def transaction_by_hash(self, tx_hash):
        return {"hash": HexBytes(tx_hash), "blockNumber": None}, True

    async def block_number(self):
        return 0


class FakeCommitBackend(FakeBackend):
    """FakeBackend that also produces blocks on demand."""

    def __init__(self, nonce: int = 0):
        super().__init__(nonce)
        self.commits = 0
        self.rollbacks = 0

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1


class FakeChain:
    """ChainReader whose head is moved by the test.

    Blocks above the head are not found.
    """

    def __init__(self, head: int):
        self.head = head
        self.head_failures = 0
        self.block_failures = 0
        self.requested: list[int | None] = []
        self.head_calls = 0
        self.close_calls = 0

    async def get_block_number(self) -> int:
        self.head_calls += 1
        if self.head_failures:
            self.head_failures -= 1
            raise RuntimeError("node unavailable")
        return self.head

    async def get_block_by_number(self, number: int | None = None) -> Block:
        self.requested.append(number)
        if self.block_failures:
            self.block_failures -= 1
            raise RuntimeError("connection reset")
        height = self.head if number is None else number
        if height > self.head:
            raise NotFoundError(f"Block {height} not found")
        return make_block(height)

    async def close(self) -> None:
        self.close_calls += 1


@pytest.fixture
def fake_backend():
    return FakeBackend(nonce=12)


@pytest.fixture
def fake_chain():
    return FakeChain(head=10)
