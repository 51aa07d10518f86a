"""In-memory chain for tests.

``SimulatedBackend`` runs a py-evm chain through eth-tester with
auto-mining disabled. Sent transactions execute against the pending block
right away but are only mined when ``commit`` is called, which makes the
lag between sending a transaction and seeing it on chain explicit.
"""

import logging
from typing import Any, Mapping

from eth_tester import EthereumTester, PyEVMBackend
from eth_tester.exceptions import (
    BlockNotFound,
    TransactionFailed,
    TransactionNotFound,
)
from eth_tester.exceptions import ValidationError as TesterValidationError
from eth_utils import ValidationError as EVMValidationError
from eth_utils import to_canonical_address, to_checksum_address
from hexbytes import HexBytes
from web3.types import BlockIdentifier, FilterParams, TxParams

from ethsync.chain.logs import LogSubscription, filter_logs
from ethsync.chain.tx import RawTransaction
from ethsync.chain.types import Block, Transaction, TransactionStatus, to_hex
from ethsync.errors import NotFoundError, SimulationError

logger = logging.getLogger(__name__)

GAS_TIP = 10**9  # wei on top of the pending base fee
ZERO_ADDRESS = "0x" + "00" * 20

# web3 call fields and their eth-tester names
_CALL_FIELDS = {
    "from": "from",
    "to": "to",
    "gas": "gas",
    "gasPrice": "gas_price",
    "maxFeePerGas": "max_fee_per_gas",
    "maxPriorityFeePerGas": "max_priority_fee_per_gas",
    "value": "value",
    "data": "data",
    "input": "data",
}

_REJECTED = (TesterValidationError, EVMValidationError, TransactionFailed)


class SimulatedBackend:
    """EVM chain with manual block production.

    ``alloc`` funds accounts at genesis. Without it eth-tester's default
    test accounts are funded instead.
    """

    def __init__(self, alloc: Mapping[str, int] | None = None):
        genesis_state = None
        if alloc:
            genesis_state = {
                to_canonical_address(account): {"balance": balance, "nonce": 0, "code": b"", "storage": {}}
                for account, balance in alloc.items()
            }
        self.tester = EthereumTester(
            backend=PyEVMBackend(genesis_state=genesis_state),
            auto_mine_transactions=False,
        )
        self.chain_id = int(self.tester.backend.chain.chain_id)
        self._snapshot = self.tester.take_snapshot()

    # Block production

    def commit(self) -> None:
        """Mine all pending transactions into a new block."""
        self.tester.mine_blocks(1)
        self._snapshot = self.tester.take_snapshot()

    def rollback(self) -> None:
        """Discard pending transactions."""
        self.tester.revert_to_snapshot(self._snapshot)

    # ChainReader

    async def get_block_number(self) -> int:
        return self.tester.get_block_by_number("latest")["number"]

    async def get_block_by_number(self, number: int | None = None) -> Block:
        block_id = "latest" if number is None else number
        try:
            raw = self.tester.get_block_by_number(block_id, full_transactions=True)
        except BlockNotFound as e:
            raise NotFoundError(f"Block {number} not found", {"number": number}) from e
        return self._parse_block(raw)

    # ChainBackend

    async def code_at(self, account: str, block: BlockIdentifier | None = None) -> bytes:
        return self._code(account, _block_id(block))

    async def call_contract(self, call: TxParams, block: BlockIdentifier | None = None) -> bytes:
        try:
            result = self.tester.call(_tester_call(call), _block_id(block))
        except _REJECTED as e:
            raise SimulationError(f"Call failed: {e}") from e
        return bytes(HexBytes(result))

    async def pending_code_at(self, account: str) -> bytes:
        return self._code(account, "pending")

    async def pending_nonce_at(self, account: str) -> int:
        return self.tester.get_nonce(to_checksum_address(account), "pending")

    async def suggest_gas_price(self) -> int:
        pending = self.tester.get_block_by_number("pending")
        return pending["base_fee_per_gas"] + GAS_TIP

    async def estimate_gas(self, call: TxParams) -> int:
        try:
            return self.tester.estimate_gas(_tester_call(call))
        except _REJECTED as e:
            raise SimulationError(f"Gas estimation failed: {e}") from e

    async def send_transaction(self, raw_tx: bytes | str) -> HexBytes:
        """Execute a signed transaction against the pending block."""
        tx = RawTransaction.decode(raw_tx)
        try:
            self.tester.send_raw_transaction(to_hex(tx.raw))
        except _REJECTED as e:
            raise SimulationError(f"Transaction rejected: {e}", {"hash": to_hex(tx.hash)}) from e
        logger.debug("Simulated transaction %s pending", to_hex(tx.hash))
        return HexBytes(tx.hash)

    async def transaction_receipt(self, tx_hash: bytes | str) -> Any:
        tx_hex = to_hex(HexBytes(tx_hash))
        try:
            raw = self.tester.get_transaction_receipt(tx_hex)
        except TransactionNotFound as e:
            raise NotFoundError(f"Receipt for {tx_hex} not found") from e
        if raw["block_number"] is None:
            raise NotFoundError(f"Receipt for {tx_hex} not found, transaction is pending")
        return _receipt(raw)

    async def balance_at(self, account: str, block: BlockIdentifier | None = None) -> int:
        try:
            return self.tester.get_balance(to_checksum_address(account), _block_id(block))
        except BlockNotFound as e:
            raise NotFoundError(f"Block {block} not found", {"number": block}) from e

    async def filter_logs(self, query: FilterParams) -> list[Any]:
        head = await self.get_block_number()
        start = _block_number(query.get("fromBlock"), head)
        end = min(_block_number(query.get("toBlock"), head), head)

        logs = []
        for number in range(start, end + 1):
            block = self.tester.get_block_by_number(number)
            for tx_hash in block["transactions"]:
                receipt = self.tester.get_transaction_receipt(tx_hash)
                logs.extend(_log(entry) for entry in receipt["logs"])
        return filter_logs(logs, query)

    async def subscribe_filter_logs(self, query: FilterParams) -> LogSubscription:
        return LogSubscription(self.filter_logs, self.get_block_number, query)

    async def transaction_by_hash(self, tx_hash: bytes | str) -> tuple[Any, bool]:
        tx_hex = to_hex(HexBytes(tx_hash))
        try:
            raw = self.tester.get_transaction_by_hash(tx_hex)
        except TransactionNotFound as e:
            raise NotFoundError(f"Transaction {tx_hex} not found") from e
        tx = {
            "hash": HexBytes(raw["hash"]),
            "from": raw["from"],
            "to": raw["to"] or None,
            "nonce": raw["nonce"],
            "value": raw["value"],
            "gas": raw["gas"],
            "gasPrice": _gas_price(raw),
            "input": HexBytes(_input(raw)),
            "blockNumber": raw["block_number"],
            "transactionIndex": raw["transaction_index"],
        }
        return tx, raw["block_number"] is None

    def _code(self, account: str, block_id: BlockIdentifier) -> bytes:
        try:
            return bytes(HexBytes(self.tester.get_code(to_checksum_address(account), block_id)))
        except BlockNotFound as e:
            raise NotFoundError(f"Block {block_id} not found", {"number": block_id}) from e

    def _parse_block(self, raw: Mapping[str, Any]) -> Block:
        transactions = []
        for tx in raw["transactions"]:
            receipt = self.tester.get_transaction_receipt(tx["hash"])
            transactions.append(
                Transaction(
                    hash=to_hex(tx["hash"]),
                    block_number=raw["number"],
                    sender=tx["from"],
                    to=tx["to"] or None,
                    nonce=tx["nonce"],
                    value=tx["value"],
                    gas_limit=tx["gas"],
                    gas_price=_gas_price(tx),
                    input=bytes(HexBytes(_input(tx))),
                    transaction_index=tx["transaction_index"],
                    gas_used=receipt["gas_used"],
                    status=TransactionStatus(receipt["status"]),
                    contract_address=receipt["contract_address"] or None,
                )
            )
        return Block(
            number=raw["number"],
            hash=to_hex(raw["hash"]),
            parent_hash=to_hex(raw["parent_hash"]),
            miner=raw["coinbase"],
            timestamp=raw["timestamp"],
            gas_limit=raw["gas_limit"],
            gas_used=raw["gas_used"],
            difficulty=raw["difficulty"],
            extra_data=bytes(HexBytes(raw["extra_data"])),
            transactions=transactions,
        )


def _block_id(block: BlockIdentifier | None) -> BlockIdentifier:
    return "latest" if block is None else block


def _block_number(value: Any, head: int) -> int:
    if value is None or value in ("latest", "pending", "safe", "finalized"):
        return head
    if value == "earliest":
        return 0
    if isinstance(value, str):
        return int(value, 16)
    return int(value)


def _tester_call(call: TxParams) -> dict[str, Any]:
    """Translate web3 call parameters into an eth-tester transaction."""
    params: dict[str, Any] = {"from": ZERO_ADDRESS}
    for key, value in call.items():
        name = _CALL_FIELDS.get(key)
        if name is None or value is None:
            continue
        if name in ("from", "to"):
            value = to_checksum_address(value)
        elif name == "data":
            value = to_hex(HexBytes(value))
        params[name] = value
    return params


def _gas_price(tx: Mapping[str, Any]) -> int:
    # Dynamic fee transactions report their fee cap
    if tx.get("gas_price") is not None:
        return tx["gas_price"]
    return tx["max_fee_per_gas"]


def _input(tx: Mapping[str, Any]) -> Any:
    return tx["input"] if "input" in tx else tx["data"]


def _log(raw: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "address": raw["address"],
        "topics": [HexBytes(topic) for topic in raw["topics"]],
        "data": HexBytes(raw["data"]),
        "blockNumber": raw["block_number"],
        "blockHash": HexBytes(raw["block_hash"]),
        "transactionHash": HexBytes(raw["transaction_hash"]),
        "transactionIndex": raw["transaction_index"],
        "logIndex": raw["log_index"],
        "removed": False,
    }


def _receipt(raw: Mapping[str, Any]) -> dict[str, Any]:
    """Receipt in the camelCase shape web3 returns."""
    return {
        "transactionHash": HexBytes(raw["transaction_hash"]),
        "transactionIndex": raw["transaction_index"],
        "blockHash": HexBytes(raw["block_hash"]),
        "blockNumber": raw["block_number"],
        "gasUsed": raw["gas_used"],
        "cumulativeGasUsed": raw["cumulative_gas_used"],
        "effectiveGasPrice": raw.get("effective_gas_price"),
        "contractAddress": raw["contract_address"] or None,
        "status": raw["status"],
        "logs": [_log(entry) for entry in raw["logs"]],
    }
