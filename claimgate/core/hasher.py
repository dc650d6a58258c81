"""
Canonical Hashing

Deterministic serialization and SHA-256 digests for claims and payments.
Same claim -> same fingerprint -> same content address. Always.

The fingerprint is what decides "same claim or conflicting claim" for a
subject, so any change to the rules below bumps SERIALIZATION_VERSION.

Rules:
- "__canon_v" is injected at the top level; the top level must be an object
- object keys must be strings; output keys are sorted
- None values are dropped from objects; empty strings and containers stay
- timestamps must carry a timezone and are written as UTC with microseconds
- enums become their value, Decimals their string form
- floats must be finite; integral floats are written as ints (JSON clients
  send 1 and 1.0 interchangeably), others use the shortest round-trip repr
- bytes, sets and anything else non-JSON are refused
- compact separators, ASCII only
"""

import hashlib
import json
import math
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any


class CanonicalSerializationError(Exception):
    """The value has no single canonical JSON form."""


def _timestamp(value: datetime, path: str) -> str:
    if value.tzinfo is None:
        raise CanonicalSerializationError(f"Naive datetime at {path or '<root>'}; attach a timezone")
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _number(value: float, path: str):
    if not math.isfinite(value):
        raise CanonicalSerializationError(f"Non-finite number at {path or '<root>'}")
    return int(value) if value.is_integer() else repr(value)


def _canonical(value: Any, path: str = "") -> Any:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, float):
        return _number(value, path)
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise CanonicalSerializationError(f"Non-finite number at {path or '<root>'}")
        return str(value)
    if isinstance(value, datetime):
        return _timestamp(value, path)
    if isinstance(value, (list, tuple)):
        return [_canonical(item, f"{path}[{i}]") for i, item in enumerate(value)]
    if hasattr(value, "model_dump"):
        value = value.model_dump(mode="python")
    if isinstance(value, dict):
        out = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise CanonicalSerializationError(
                    f"Non-string key {key!r} at {path or '<root>'}"
                )
            child = _canonical(item, f"{path}.{key}" if path else key)
            if child is not None:
                out[key] = child
        return out
    if isinstance(value, (bytes, bytearray)):
        raise CanonicalSerializationError(f"Raw bytes at {path or '<root>'}; encode them as text first")
    if isinstance(value, (set, frozenset)):
        raise CanonicalSerializationError(f"Unordered set at {path or '<root>'}; use a list")
    raise CanonicalSerializationError(
        f"{type(value).__name__} at {path or '<root>'} is not JSON-compatible"
    )


class Hasher:
    """Canonical serialization and the digests derived from it."""

    SERIALIZATION_VERSION = 1

    CONTENT_ADDRESS_PREFIX = "sha256:"
    CLAIM_ID_PREFIX = "claim_"
    PAYMENT_ID_PREFIX = "pay_"

    @classmethod
    def canonicalize(cls, data: Any) -> str:
        """
        Canonical JSON for a dict or pydantic model.

        Raises:
            CanonicalSerializationError: the data has no canonical form
        """
        body = _canonical(data)
        if not isinstance(body, dict):
            raise CanonicalSerializationError(
                f"Only objects can be canonicalized, got {type(data).__name__}"
            )
        body["__canon_v"] = cls.SERIALIZATION_VERSION
        return json.dumps(body, sort_keys=True, separators=(",", ":"), ensure_ascii=True, allow_nan=False)

    @classmethod
    def hash_data(cls, data: Any) -> str:
        """Hex-encoded SHA-256 of the canonical form."""
        return hashlib.sha256(cls.canonicalize(data).encode("utf-8")).hexdigest()

    # ================================================================
    # Claim identity
    # ================================================================

    @classmethod
    def content_bytes(cls, submission) -> bytes:
        """The bytes uploaded to the content store for a submission."""
        return cls.canonicalize(submission.content()).encode("utf-8")

    @classmethod
    def fingerprint(cls, submission) -> str:
        """SHA-256 over the canonical submission content."""
        return hashlib.sha256(cls.content_bytes(submission)).hexdigest()

    @classmethod
    def claim_id(cls, fingerprint: str) -> str:
        """
        Claim id derived from the fingerprint.

        Deriving it (rather than generating it) makes claim id equality and
        payload equality the same test.
        """
        return f"{cls.CLAIM_ID_PREFIX}{fingerprint[:24]}"

    @classmethod
    def content_address(cls, data: bytes) -> str:
        """Deterministic digest address for opaque bytes."""
        return f"{cls.CONTENT_ADDRESS_PREFIX}{hashlib.sha256(data).hexdigest()}"

    @classmethod
    def payment_id(cls, proof) -> str:
        """
        Stable identifier for a payment proof.

        Covers the signed authorization and the signature itself, so the
        same proof always maps to the same id and cannot be replayed under
        a different one.
        """
        material = {
            "authorization": proof.authorization(),
            "signature": proof.signature_or_receipt,
        }
        return f"{cls.PAYMENT_ID_PREFIX}{cls.hash_data(material)[:32]}"
