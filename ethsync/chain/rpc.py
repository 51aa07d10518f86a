"""RPC client for reading blocks from a node."""

from typing import Any, Iterator, Sequence

import httpx
from hexbytes import HexBytes
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import BlockNotFound

from ethsync.chain.types import Block, Transaction, TransactionStatus, to_hex
from ethsync.config import chain_config, resolve_rpc_url, settings
from ethsync.errors import NotFoundError, RPCError


def chunk_transactions(txs: Sequence[Transaction], chunk_size: int) -> Iterator[Sequence[Transaction]]:
    """Split transactions into consecutive chunks of at most ``chunk_size``."""
    if chunk_size <= 0:
        raise ValueError("chunk size must be a positive number")
    for start in range(0, len(txs), chunk_size):
        yield txs[start:start + chunk_size]


def _quantity(value: Any) -> int:
    if isinstance(value, str):
        return int(value, 16)
    return int(value)


class RPCClient:
    """Async block reader with batched receipt retrieval."""

    def __init__(
        self,
        rpc_url: str | None = None,
        batch_size: int | None = None,
        timeout: float | None = None,
    ):
        self.rpc_url = resolve_rpc_url(rpc_url)
        self.batch_size = batch_size or settings.receipt_batch_size
        self.timeout = timeout or chain_config.rpc_timeout

        self.w3 = AsyncWeb3(AsyncHTTPProvider(self.rpc_url))
        self._http_client: httpx.AsyncClient | None = None
        self._request_id = 0

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def get_block_number(self) -> int:
        """Get latest block number."""
        return await self.w3.eth.block_number

    async def get_block_by_number(self, number: int | None = None) -> Block:
        """Get a block with its transactions and their receipts.

        ``None`` requests the latest block. Raises NotFoundError when the
        node does not have the block yet.
        """
        try:
            raw = await self.w3.eth.get_block(
                "latest" if number is None else number,
                full_transactions=True,
            )
        except BlockNotFound as e:
            raise NotFoundError(f"Block {number} not found", {"number": number}) from e
        if raw is None:
            raise NotFoundError(f"Block {number} not found", {"number": number})

        block = self._parse_block(raw)
        if block.transactions:
            await self._load_receipts(block)
        return block

    async def _load_receipts(self, block: Block) -> None:
        """Fetch receipts in bounded batches and copy them onto the transactions."""
        offset = 0
        for chunk in chunk_transactions(block.transactions, self.batch_size):
            try:
                responses = await self.batch_request(
                    "eth_getTransactionReceipt",
                    [[tx.hash] for tx in chunk],
                )
            except (httpx.HTTPError, RPCError) as e:
                raise RPCError(
                    f"Getting transaction receipts (offset: {offset}, len: {len(chunk)}): {e}",
                    {"block": block.number, "offset": offset},
                ) from e

            for i, (tx, response) in enumerate(zip(chunk, responses)):
                index = offset + i
                if "error" in response:
                    raise RPCError(
                        f"Request error for transaction {index} of block {block.number}: {response['error']}",
                        {"block": block.number, "index": index},
                    )
                receipt = response.get("result")
                if receipt is None:
                    raise RPCError(
                        f"Got null receipt for transaction {index} of block {block.number}",
                        {"block": block.number, "index": index},
                    )
                self._apply_receipt(tx, receipt)

            offset += len(chunk)

    async def batch_request(
        self,
        method: str,
        params_list: list[list[Any]],
    ) -> list[dict[str, Any]]:
        """Send one JSON-RPC batch and return responses in request order."""
        client = await self._get_http_client()
        first_id = self._request_id
        batch = [
            {
                "jsonrpc": "2.0",
                "method": method,
                "params": params,
                "id": first_id + i,
            }
            for i, params in enumerate(params_list)
        ]
        self._request_id += len(batch)

        response = await client.post(
            self.rpc_url,
            json=batch,
            headers={"Content-Type": "application/json"},
        )
        response.raise_for_status()
        results = response.json()

        if not isinstance(results, list) or len(results) != len(batch):
            raise RPCError(
                f"Unexpected batch response for {method}",
                {"expected": len(batch), "response": results},
            )

        ids = [entry.get("id") if isinstance(entry, dict) else None for entry in results]
        expected = list(range(first_id, first_id + len(batch)))
        if any(type(i) is not int for i in ids) or sorted(ids) != expected:
            raise RPCError(
                f"Batch response ids for {method} do not match the request",
                {"expected": expected, "ids": ids},
            )

        # Sort by ID
        results.sort(key=lambda x: x["id"])
        return results

    @staticmethod
    def _apply_receipt(tx: Transaction, receipt: dict[str, Any]) -> None:
        if receipt.get("gasUsed") is None:
            raise RPCError(f"Receipt of {tx.hash} is missing gasUsed")
        tx.gas_used = _quantity(receipt["gasUsed"])
        if receipt.get("status") is not None:
            tx.status = TransactionStatus(_quantity(receipt["status"]))
        if receipt.get("contractAddress"):
            tx.contract_address = receipt["contractAddress"]

    @staticmethod
    def _parse_block(raw: Any) -> Block:
        transactions = [
            Transaction(
                hash=to_hex(tx["hash"]),
                block_number=tx["blockNumber"],
                sender=tx["from"],
                to=tx.get("to"),
                nonce=tx["nonce"],
                value=tx["value"],
                gas_limit=tx["gas"],
                gas_price=tx.get("gasPrice", 0),
                input=bytes(HexBytes(tx.get("input", b""))),
                transaction_index=tx["transactionIndex"],
            )
            for tx in raw.get("transactions", [])
        ]
        return Block(
            number=raw["number"],
            hash=to_hex(raw["hash"]),
            parent_hash=to_hex(raw["parentHash"]),
            miner=raw["miner"],
            timestamp=raw["timestamp"],
            gas_limit=raw["gasLimit"],
            gas_used=raw["gasUsed"],
            difficulty=raw.get("difficulty", 0),
            extra_data=bytes(HexBytes(raw.get("extraData", b""))),
            transactions=transactions,
        )
