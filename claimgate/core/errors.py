"""
Registry Error Taxonomy

Every failure a client can observe has a discriminated `kind`, a readable
`detail`, an HTTP status and a retryable flag. The API renders these
uniformly; nothing else decides status codes.

Propagation:
- Errors before reservation never leave persisted state.
- Errors at or after reservation always leave a ClaimRecord (Pending or Failed).
"""

from typing import Optional


class RegistryError(Exception):
    """Base exception for all client-visible registry errors."""

    kind: str = "registry_error"
    http_status: int = 500
    retryable: bool = False

    def __init__(self, detail: str, record=None):
        super().__init__(detail)
        self.detail = detail
        # ClaimRecord left behind by a post-reservation failure, if any
        self.record = record

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "detail": self.detail,
            "retryable": self.retryable,
        }


class MalformedSubmission(RegistryError):
    """The claim body could not be parsed."""
    kind = "malformed_submission"
    http_status = 422


class MalformedProof(RegistryError):
    """
    The payment proof is missing fields or cannot be decoded.

    Never fatal: the negotiator answers with a fresh challenge.
    """
    kind = "malformed_proof"
    http_status = 402


class PaymentRejected(RegistryError):
    """The facilitator denied the proof, or the proof was already consumed."""
    kind = "payment_rejected"
    http_status = 402


class PaymentFacilitatorUnavailable(RegistryError):
    """The facilitator could not be reached. Retry with the same proof."""
    kind = "payment_facilitator_unavailable"
    http_status = 503
    retryable = True


class SubmissionInProgress(RegistryError):
    """Another submission holds the reservation for this subject."""
    kind = "submission_in_progress"
    http_status = 409
    retryable = True


class ClaimConflict(RegistryError):
    """A different claim is already registered for this subject."""
    kind = "claim_conflict"
    http_status = 409


class ClaimNotFound(RegistryError):
    """No record exists for this subject."""
    kind = "not_found"
    http_status = 404


class PostPaymentFailure(RegistryError):
    """
    Base for failures after payment was verified and reserved.

    Resubmitting the same claim for the same subject resumes without a
    new payment.
    """
    http_status = 502
    retryable = True
    stage: str = "post_payment"


class ContentStoreFailure(PostPaymentFailure):
    """Upload to the content-addressed store failed."""
    kind = "content_store_failure"
    stage = "content_store"


class LedgerBroadcastFailure(PostPaymentFailure):
    """Broadcast or confirmation of the registration transaction failed."""
    kind = "ledger_broadcast_failure"
    stage = "ledger_broadcast"


class InternalInconsistency(RegistryError):
    """
    Stored state contradicts itself.

    Surfaced for operator attention; never repaired silently.
    """
    kind = "internal_inconsistency"
    http_status = 500


ERROR_KINDS: dict[str, type[RegistryError]] = {
    cls.kind: cls
    for cls in (
        MalformedSubmission,
        MalformedProof,
        PaymentRejected,
        PaymentFacilitatorUnavailable,
        SubmissionInProgress,
        ClaimConflict,
        ClaimNotFound,
        ContentStoreFailure,
        LedgerBroadcastFailure,
        InternalInconsistency,
    )
}


def error_from_dict(data: dict, record=None) -> RegistryError:
    """Rebuild a registry error from its rendered form (client side)."""
    kind: Optional[str] = data.get("kind")
    detail = data.get("detail") or "Unknown error"
    error_cls = ERROR_KINDS.get(kind or "", RegistryError)
    return error_cls(detail, record=record)
