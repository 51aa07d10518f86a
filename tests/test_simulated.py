"""Tests for ethsync.chain.simulated."""

import pytest
import rlp
from eth_utils import keccak, to_canonical_address, to_checksum_address

from conftest import ACCOUNT_A, ACCOUNT_B, KEY_A, KEY_B, RECIPIENT, deploy_code, sign_transfer
from ethsync.chain.backend import wait_for_receipt
from ethsync.chain.simulated import GAS_TIP, SimulatedBackend
from ethsync.chain.tx import RawTransaction
from ethsync.errors import NotFoundError, SimulationError, TransactionDecodeError

FUNDS = 10**21
GAS_PRICE = 10**10

# PUSH1 42 PUSH1 0 MSTORE PUSH1 32 PUSH1 0 RETURN
RETURN_42 = bytes([0x60, 0x2A, 0x60, 0x00, 0x52, 0x60, 0x20, 0x60, 0x00, 0xF3])


@pytest.fixture
def sim():
    return SimulatedBackend({ACCOUNT_A: FUNDS})


def transfer(sim: SimulatedBackend, key: str, nonce: int, **kwargs) -> bytes:
    kwargs.setdefault("gas_price", GAS_PRICE)
    return sign_transfer(key, nonce, chain_id=sim.chain_id, **kwargs)


def create_address(sender: str, nonce: int) -> str:
    return to_checksum_address(keccak(rlp.encode([to_canonical_address(sender), nonce]))[12:])


class TestSendTransaction:
    async def test_transfer_is_mined_on_commit(self, sim):
        tx_hash = await sim.send_transaction(transfer(sim, KEY_A, 0, value=1000))

        with pytest.raises(NotFoundError):
            await sim.transaction_receipt(tx_hash)
        _, pending = await sim.transaction_by_hash(tx_hash)
        assert pending is True
        assert await sim.balance_at(RECIPIENT) == 0
        assert await sim.balance_at(RECIPIENT, "pending") == 1000

        sim.commit()

        receipt = await sim.transaction_receipt(tx_hash)
        assert receipt["status"] == 1
        assert receipt["blockNumber"] == 1
        assert receipt["gasUsed"] == 21000
        assert receipt["transactionHash"] == tx_hash
        tx, pending = await sim.transaction_by_hash(tx_hash)
        assert pending is False
        assert tx["blockNumber"] == 1

        assert await sim.balance_at(RECIPIENT) == 1000
        assert await sim.balance_at(ACCOUNT_A) == FUNDS - 1000 - 21000 * GAS_PRICE
        assert await sim.balance_at(ACCOUNT_A, 0) == FUNDS
        assert await sim.pending_nonce_at(ACCOUNT_A) == 1

    async def test_block_contents(self, sim):
        await sim.send_transaction(transfer(sim, KEY_A, 0))
        await sim.send_transaction(transfer(sim, KEY_A, 1))
        sim.commit()

        block = await sim.get_block_by_number(1)
        assert block.parent_hash == (await sim.get_block_by_number(0)).hash
        assert [tx.nonce for tx in block.transactions] == [0, 1]
        assert [tx.transaction_index for tx in block.transactions] == [0, 1]
        assert all(tx.succeeded and tx.sender == ACCOUNT_A for tx in block.transactions)
        assert all(tx.gas_price == GAS_PRICE and tx.to == RECIPIENT for tx in block.transactions)
        assert block.gas_used == 42000
        assert (await sim.get_block_by_number()).number == 1

    async def test_nonce_gap_is_rejected(self, sim):
        with pytest.raises(SimulationError):
            await sim.send_transaction(transfer(sim, KEY_A, 1))
        assert await sim.pending_nonce_at(ACCOUNT_A) == 0

    async def test_insufficient_funds(self, sim):
        with pytest.raises(SimulationError):
            await sim.send_transaction(transfer(sim, KEY_B, 0))
        assert await sim.pending_nonce_at(ACCOUNT_B) == 0

    async def test_malformed(self, sim):
        with pytest.raises(TransactionDecodeError):
            await sim.send_transaction(b"\x05\xc0")


class TestContracts:
    async def test_deploy_and_call(self, sim):
        address = create_address(ACCOUNT_A, 0)
        raw = transfer(sim, KEY_A, 0, to=None, value=0, gas=200000, data=deploy_code(RETURN_42))
        tx_hash = await sim.send_transaction(raw)

        assert await sim.pending_code_at(address) == RETURN_42
        assert await sim.code_at(address) == b""

        sim.commit()

        receipt = await sim.transaction_receipt(tx_hash)
        assert receipt["contractAddress"] == address
        assert await sim.code_at(address) == RETURN_42
        assert await sim.call_contract({"to": address}) == (42).to_bytes(32, "big")

        block = await sim.get_block_by_number(1)
        assert block.transactions[0].is_contract_creation
        assert block.transactions[0].contract_address == address

    async def test_account_without_code(self, sim):
        assert await sim.code_at(RECIPIENT) == b""
        assert await sim.pending_code_at(RECIPIENT) == b""
        assert await sim.call_contract({"to": RECIPIENT}) == b""

    async def test_estimate_transfer(self, sim):
        assert await sim.estimate_gas({"from": ACCOUNT_A, "to": RECIPIENT, "value": 1}) == 21000


class TestRollback:
    async def test_rollback_discards_pending(self, sim):
        raw = transfer(sim, KEY_A, 0, value=5)
        await sim.send_transaction(raw)
        sim.rollback()

        assert await sim.pending_nonce_at(ACCOUNT_A) == 0
        assert await sim.balance_at(RECIPIENT, "pending") == 0

        # Same transaction can be sent again
        await sim.send_transaction(raw)
        sim.commit()
        assert await sim.get_block_number() == 1
        assert await sim.balance_at(RECIPIENT) == 5

    async def test_rollback_keeps_committed_blocks(self, sim):
        await sim.send_transaction(transfer(sim, KEY_A, 0))
        sim.commit()
        await sim.send_transaction(transfer(sim, KEY_A, 1))
        sim.rollback()

        assert await sim.get_block_number() == 1
        assert await sim.pending_nonce_at(ACCOUNT_A) == 1


class TestReader:
    async def test_genesis(self, sim):
        assert await sim.get_block_number() == 0
        genesis = await sim.get_block_by_number(0)
        assert genesis.transactions == []
        assert await sim.balance_at(ACCOUNT_A) == FUNDS

    async def test_beyond_head(self, sim):
        with pytest.raises(NotFoundError):
            await sim.get_block_by_number(1)

    async def test_suggest_gas_price_covers_base_fee(self, sim):
        price = await sim.suggest_gas_price()
        assert price > GAS_TIP
        await sim.send_transaction(transfer(sim, KEY_A, 0, gas_price=price))


class TestWaitForReceipt:
    async def test_commits_once(self, sim):
        raw = transfer(sim, KEY_A, 0)
        tx_hash = await sim.send_transaction(raw)
        receipt = await wait_for_receipt(sim, tx_hash)

        assert receipt["transactionHash"] == RawTransaction.decode(raw).hash
        assert await sim.get_block_number() == 1
