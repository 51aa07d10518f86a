"""Concurrency-safe helpers for talking to Ethereum nodes over RPC."""

__version__ = "0.1.0"
