"""
Payment Schemas (x402 wire format)

A challenge advertises what must be paid. A proof is what the client presents.
Both travel base64-encoded JSON in HTTP headers:

    PAYMENT-REQUIRED  (server -> client, with status 402)
    X-PAYMENT         (client -> server, on retry)
    PAYMENT-RESPONSE  (server -> client, on success)

Field names on the wire are camelCase to match the x402 convention.
"""

import base64
import binascii
import json
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError


X402_VERSION = 1


class HeaderDecodeError(ValueError):
    """Raised when a payment header cannot be decoded."""
    pass


class _WireModel(BaseModel):
    """Base for models that round-trip through base64 JSON headers."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def to_header(self) -> str:
        raw = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return base64.b64encode(raw.encode("utf-8")).decode("ascii")

    @classmethod
    def from_header(cls, value: str):
        """
        Decode a base64 JSON header into this model.

        Raises:
            HeaderDecodeError: on bad base64, bad JSON or missing fields
        """
        try:
            raw = base64.b64decode(value.strip(), validate=True)
            data = json.loads(raw.decode("utf-8"))
        except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise HeaderDecodeError(f"Header is not base64-encoded JSON: {e}") from e

        if not isinstance(data, dict):
            raise HeaderDecodeError("Header must encode a JSON object")

        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise HeaderDecodeError(str(e)) from e


class PriceSpec(_WireModel):
    """
    Machine-readable price for one gated resource.

    This is one entry of the `accepts` list in a payment challenge.
    """
    scheme: str = "exact"
    network: str
    max_amount_required: Decimal = Field(..., alias="maxAmountRequired", gt=0)
    currency: str
    asset: str
    pay_to: str = Field(..., alias="payTo")
    resource: str
    description: str = ""
    mime_type: str = Field(default="application/json", alias="mimeType")
    max_timeout_seconds: int = Field(default=120, alias="maxTimeoutSeconds", gt=0)
    rails: list[str] = Field(default_factory=lambda: ["x402-exact"])


class PaymentChallenge(_WireModel):
    """Body and PAYMENT-REQUIRED header of a 402 response."""
    x402_version: int = Field(default=X402_VERSION, alias="x402Version")
    error: str = "Payment required"
    accepts: list[PriceSpec]

    def primary(self) -> PriceSpec:
        return self.accepts[0]


class PaymentProof(_WireModel):
    """
    Evidence that payment has been made or authorized.

    Single-use: once the payment id derived from it is consumed by a
    reservation, it cannot authorize another registration.
    """
    amount: Decimal = Field(..., gt=0)
    currency: str = Field(..., min_length=1)
    payer_address: str = Field(..., alias="payerAddress", min_length=1)
    signature_or_receipt: str = Field(..., alias="signatureOrReceipt", min_length=1)

    # Authorization details (optional for receipt-style proofs)
    nonce: Optional[str] = None
    valid_before: Optional[int] = Field(default=None, alias="validBefore")
    network: Optional[str] = None
    pay_to: Optional[str] = Field(default=None, alias="payTo")

    def authorization(self) -> dict:
        """The signed part of the proof: everything except the signature."""
        return {
            "amount": self.amount,
            "currency": self.currency,
            "payer_address": self.payer_address,
            "nonce": self.nonce,
            "valid_before": self.valid_before,
            "network": self.network,
            "pay_to": self.pay_to,
        }

    def is_fresh(self, now: float) -> bool:
        """Whether the proof is still inside its validity window."""
        return self.valid_before is None or now < self.valid_before


class PaymentReceipt(_WireModel):
    """PAYMENT-RESPONSE header returned when a payment was consumed."""
    payment_id: str = Field(..., alias="paymentId")
    subject_id: str = Field(..., alias="subjectId")
    transaction_hash: Optional[str] = Field(default=None, alias="transactionHash")


@dataclass(frozen=True)
class PaymentVerdict:
    """
    Result of facilitator verification.

    Transient: it is never persisted beyond the claim record it authorizes.
    """
    verified: bool
    payment_id: str
    reason: Optional[str] = None
    payer: Optional[str] = None
