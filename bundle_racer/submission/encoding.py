from __future__ import annotations

import base64
from typing import Sequence

import base58

from .types import BundleValidationError, SignedTransaction


def serialize_transaction(transaction: SignedTransaction) -> bytes:
    """Wire bytes for a signed transaction.

    Accepts ``solders`` transactions (``bytes(tx)``) as well as objects
    exposing a ``serialize()`` method.
    """
    serialize = getattr(transaction, "serialize", None)
    raw = serialize() if callable(serialize) else bytes(transaction)
    if not isinstance(raw, (bytes, bytearray)) or not raw:
        raise BundleValidationError("Transaction serialized to an empty payload")
    return bytes(raw)


def encode_payload(raw: bytes, encoding: str) -> str:
    if encoding == "base64":
        return base64.b64encode(raw).decode("ascii")
    return base58.b58encode(raw).decode("ascii")


def bundle_signature(transactions: Sequence[SignedTransaction]) -> str:
    """Base58 of the first signature of the first transaction."""
    if not transactions:
        raise BundleValidationError("Bundle contains no transactions")
    first = transactions[0]
    if first is None:
        raise BundleValidationError("First transaction is missing")
    signatures = list(getattr(first, "signatures", None) or [])
    if not signatures:
        raise BundleValidationError("First transaction is missing signatures")
    raw = bytes(signatures[0])
    if not raw:
        raise BundleValidationError("First transaction signature is empty")
    return base58.b58encode(raw).decode("ascii")


def encode_bundle(transactions: Sequence[SignedTransaction], *, encoding: str = "base58") -> list[str]:
    encoded: list[str] = []
    for index, transaction in enumerate(transactions):
        if transaction is None:
            raise BundleValidationError(f"Transaction at index {index} is missing")
        try:
            encoded.append(encode_payload(serialize_transaction(transaction), encoding))
        except BundleValidationError as error:
            raise BundleValidationError(f"Transaction at index {index}: {error}") from error
        except Exception as error:
            raise BundleValidationError(
                f"Failed to serialize transaction at index {index}: {error}"
            ) from error
    if not encoded:
        raise BundleValidationError("Bundle contains no transactions")
    return encoded
