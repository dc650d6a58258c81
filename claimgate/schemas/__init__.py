# Canonical schemas for the payment-gated claim registry.
# Claims are keyed by subject; payments are single-use.

from .claim import (
    ClaimRecord,
    ClaimStatus,
    ClaimSubmission,
    ClaimType,
)
from .payment import (
    X402_VERSION,
    HeaderDecodeError,
    PaymentChallenge,
    PaymentProof,
    PaymentReceipt,
    PaymentVerdict,
    PriceSpec,
)

__all__ = [
    # Claim
    "ClaimRecord",
    "ClaimStatus",
    "ClaimSubmission",
    "ClaimType",
    # Payment
    "X402_VERSION",
    "HeaderDecodeError",
    "PaymentChallenge",
    "PaymentProof",
    "PaymentReceipt",
    "PaymentVerdict",
    "PriceSpec",
]
