"""Blockchain interaction modules."""

from ethsync.chain.backend import (
    ChainBackend,
    ChainReader,
    SupportsCommitRollback,
    Web3Backend,
    wait_for_receipt,
)
from ethsync.chain.logs import LogSubscription, filter_logs, match_log
from ethsync.chain.nonce import (
    NonceTrackingBackend,
    SerializedSender,
    SimulatedNonceTrackingBackend,
    track_nonces,
)
from ethsync.chain.rpc import RPCClient
from ethsync.chain.simulated import SimulatedBackend
from ethsync.chain.transfer import TransactOpts, Transferer
from ethsync.chain.tx import RawTransaction
from ethsync.chain.types import Block, Transaction, TransactionStatus

__all__ = [
    "ChainBackend",
    "ChainReader",
    "SupportsCommitRollback",
    "Web3Backend",
    "wait_for_receipt",
    "LogSubscription",
    "filter_logs",
    "match_log",
    "NonceTrackingBackend",
    "SimulatedNonceTrackingBackend",
    "SerializedSender",
    "track_nonces",
    "RPCClient",
    "SimulatedBackend",
    "TransactOpts",
    "Transferer",
    "RawTransaction",
    "Block",
    "Transaction",
    "TransactionStatus",
]
