"""
Canonical Claim Schema

A claim is registered once per subject. Nothing is merged and nothing is
overwritten once it is final: a Registered record is the permanent answer
for its subject identifier.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ClaimType(str, Enum):
    """
    Categories of identity claim accepted by the registry.
    You can add more later, never remove.
    """
    GENESIS = "genesis"                             # First claim for a new identity
    IDENTITY_VERIFICATION = "identity_verification" # Attested identity check
    AGENT_CONFIGURATION = "agent_configuration"     # Signed model/prompt configuration
    AUTH_CLAIM = "auth_claim"                       # Public key binding for a DID


class ClaimStatus(str, Enum):
    """
    Lifecycle of a claim record.

    Pending -> Registered is the only path to a final state.
    Pending -> Failed leaves the slot reusable.
    """
    PENDING = "pending"
    REGISTERED = "registered"
    FAILED = "failed"


class ClaimSubmission(BaseModel):
    """
    One identity claim a subject wants registered.

    Immutable once accepted. The subject identifier is the idempotency key;
    a different claim for an already-registered subject is a conflict.
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    subject_id: str = Field(
        ...,
        alias="did",
        min_length=1,
        description="Stable external identifier, typically a DID",
        examples=["did:iden3:polygon:amoy:x3HstHLj2rTp6HHXk2WczYP7w3rpCsRbwCMeaQ2H2"],
    )
    claim_type: ClaimType = Field(
        ...,
        alias="claimType",
        description="Category of the claim",
    )
    payload: dict[str, Any] = Field(
        default_factory=dict,
        alias="claimData",
        description="Opaque structured document to be content-addressed",
    )
    issuer: Optional[str] = Field(
        default=None,
        description="DID of the issuing party, if different from the subject",
    )

    @field_validator("subject_id")
    @classmethod
    def subject_id_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("subject_id must not be blank")
        if v != v.strip():
            raise ValueError("subject_id must not carry surrounding whitespace")
        return v

    def content(self) -> dict[str, Any]:
        """The part of the submission that is fingerprinted and stored."""
        return {
            "subject_id": self.subject_id,
            "claim_type": self.claim_type,
            "payload": self.payload,
            "issuer": self.issuer,
        }


class ClaimRecord(BaseModel):
    """
    The durable result of a submission.

    Created Pending the moment payment verification succeeds.
    The claim ledger is the only writer of `status`.
    """
    subject_id: str
    claim_id: str
    claim_type: ClaimType
    fingerprint: str = Field(
        ...,
        description="SHA-256 of the canonical submission content",
    )
    payment_id: str
    status: ClaimStatus

    content_address: Optional[str] = None
    transaction_hash: Optional[str] = None

    # Retained for diagnosis when status is FAILED
    failure_kind: Optional[str] = None
    failure_reason: Optional[str] = None

    attempts: int = Field(default=1, ge=1)
    created_at: datetime
    updated_at: datetime

    # Canonical submission, kept so recovery can re-upload after a restart.
    # Never part of the wire representation.
    content: Optional[str] = Field(default=None, exclude=True, repr=False)

    @property
    def is_final(self) -> bool:
        return self.status == ClaimStatus.REGISTERED

    def matches(self, fingerprint: str) -> bool:
        """Whether a submission with this fingerprint is the same claim."""
        return self.fingerprint == fingerprint
