"""Typed exceptions for ethsync."""

from typing import Any


class EthSyncError(Exception):
    """Base exception for ethsync."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.details = details or {}


class NotFoundError(EthSyncError):
    """Requested block, transaction or receipt does not exist (yet)."""


class RPCError(EthSyncError):
    """Malformed or failed JSON-RPC response."""


class TransactionDecodeError(EthSyncError, ValueError):
    """Raw transaction bytes could not be decoded."""


class TransactionFailedError(EthSyncError):
    """Transaction was mined but its receipt status is not successful."""


class SimulationError(EthSyncError):
    """Simulated chain rejected a transaction."""
