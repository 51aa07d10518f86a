"""Decoding of signed raw transactions."""

from dataclasses import dataclass

import rlp
from eth_account import Account
from eth_utils import big_endian_to_int, keccak, to_checksum_address
from hexbytes import HexBytes
from rlp.exceptions import DecodingError

from ethsync.errors import TransactionDecodeError

# Field positions inside the RLP payload, per transaction type
_LEGACY_FIELDS = {"nonce": 0, "gas_price": 1, "gas": 2, "to": 3, "value": 4, "data": 5}
_ACCESS_LIST_FIELDS = {"nonce": 1, "gas_price": 2, "gas": 3, "to": 4, "value": 5, "data": 6}
_DYNAMIC_FEE_FIELDS = {"nonce": 1, "gas_price": 3, "gas": 4, "to": 5, "value": 6, "data": 7}

# Blob (EIP-4844) and set-code (EIP-7702) transactions share the
# dynamic fee prefix and append their own fields after the access list.
_TYPED_FIELDS = {
    1: _ACCESS_LIST_FIELDS,
    2: _DYNAMIC_FEE_FIELDS,
    3: _DYNAMIC_FEE_FIELDS,
    4: _DYNAMIC_FEE_FIELDS,
}

BLOB_TX_TYPE = 3


@dataclass(frozen=True)
class RawTransaction:
    """Decoded view of a signed transaction.

    ``raw`` is the input as given. ``signed`` is the canonical encoding
    that was hashed and signed; the two only differ for blob transactions
    received in their network wrapper (payload plus blobs, commitments
    and proofs).
    """

    raw: HexBytes
    type: int
    nonce: int
    to: str | None
    value: int
    gas: int
    gas_price: int  # maxFeePerGas for dynamic fee transactions
    data: bytes
    hash: HexBytes
    signed: HexBytes

    @classmethod
    def decode(cls, raw_tx: bytes | str) -> "RawTransaction":
        """Decode legacy and typed (1 to 4) signed transactions."""
        try:
            raw = HexBytes(raw_tx)
        except (TypeError, ValueError) as e:
            raise TransactionDecodeError(f"Invalid transaction encoding: {e}") from e
        if not raw:
            raise TransactionDecodeError("Empty transaction")

        if raw[0] >= 0xC0:
            tx_type, payload, fields = 0, bytes(raw), _LEGACY_FIELDS
        elif raw[0] in _TYPED_FIELDS:
            tx_type, payload, fields = raw[0], bytes(raw[1:]), _TYPED_FIELDS[raw[0]]
        else:
            raise TransactionDecodeError(f"Unsupported transaction type: {raw[0]}")

        try:
            items = rlp.decode(payload)
        except DecodingError as e:
            raise TransactionDecodeError(f"Malformed RLP payload: {e}") from e
        if not isinstance(items, list) or not items:
            raise TransactionDecodeError("Transaction payload is not a list")

        signed = raw
        if tx_type == BLOB_TX_TYPE and isinstance(items[0], list):
            # Network wrapper: the signed transaction is the first element
            items = items[0]
            signed = HexBytes(bytes([tx_type]) + rlp.encode(items))

        if len(items) <= max(fields.values()):
            raise TransactionDecodeError("Transaction payload has too few fields")
        values = [items[fields[name]] for name in ("nonce", "to", "value", "gas", "gas_price", "data")]
        if any(isinstance(v, list) for v in values):
            raise TransactionDecodeError("Transaction field is a list where bytes are expected")
        nonce, to_bytes, value, gas, gas_price, data = values

        return cls(
            raw=raw,
            type=tx_type,
            nonce=big_endian_to_int(nonce),
            to=to_checksum_address(to_bytes) if to_bytes else None,
            value=big_endian_to_int(value),
            gas=big_endian_to_int(gas),
            gas_price=big_endian_to_int(gas_price),
            data=bytes(data),
            hash=HexBytes(keccak(bytes(signed))),
            signed=signed,
        )

    def sender(self) -> str:
        """Recover the signer's checksum address from the signature."""
        return Account.recover_transaction(bytes(self.signed))
