"""
Payment Challenge Negotiator

Server-side half of the x402 handshake. For every inbound submission it
decides between:

    Challenge  - answer 402 with the price (no proof, or an unusable one)
    Proceed    - hand the proof to the Coordinator and return its result

Issuing a challenge never mutates state. A malformed proof is never a hard
error: the client simply gets a fresh challenge telling it what to pay.

A claim that is already settled for its subject (Registered with the same
content, or Failed after payment and resumable) is answered from the claim
ledger without a challenge.
"""

from dataclasses import dataclass
from typing import Optional, Union

from ..observability import MetricsCollector, get_logger, get_metrics
from ..schemas import (
    ClaimSubmission,
    HeaderDecodeError,
    PaymentChallenge,
    PaymentProof,
    PaymentReceipt,
)
from .config import PricingConfig
from .coordinator import ClaimSubmissionCoordinator, SubmissionResult
from .errors import MalformedProof

logger = get_logger(__name__)


PROOF_HEADER = "X-PAYMENT"
CHALLENGE_HEADER = "PAYMENT-REQUIRED"
RECEIPT_HEADER = "PAYMENT-RESPONSE"


@dataclass(frozen=True)
class Challenge:
    """Payment is required before the submission can proceed."""
    challenge: PaymentChallenge

    def headers(self) -> dict[str, str]:
        return {CHALLENGE_HEADER: self.challenge.to_header()}


@dataclass(frozen=True)
class Proceed:
    """The submission went through to the Coordinator."""
    result: SubmissionResult
    proof: Optional[PaymentProof] = None

    def headers(self) -> dict[str, str]:
        if not self.result.payment_consumed:
            return {}
        record = self.result.record
        receipt = PaymentReceipt(
            payment_id=record.payment_id,
            subject_id=record.subject_id,
            transaction_hash=record.transaction_hash,
        )
        return {RECEIPT_HEADER: receipt.to_header()}


class PaymentChallengeNegotiator:
    """Turns (claim, optional proof header) into Challenge or Proceed."""

    def __init__(
        self,
        coordinator: ClaimSubmissionCoordinator,
        pricing: Optional[PricingConfig] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self._coordinator = coordinator
        self._pricing = pricing or coordinator.pricing
        self._metrics = metrics or get_metrics()

    @property
    def coordinator(self) -> ClaimSubmissionCoordinator:
        return self._coordinator

    def challenge(self, error: str = "Payment required") -> Challenge:
        """Build a challenge. Pure: safe to call any number of times."""
        return Challenge(challenge=self._pricing.challenge(error))

    @staticmethod
    def parse_proof(header_value: str) -> PaymentProof:
        """
        Decode an X-PAYMENT header.

        Raises:
            MalformedProof: not base64 JSON, or required fields missing
        """
        try:
            return PaymentProof.from_header(header_value)
        except HeaderDecodeError as e:
            raise MalformedProof(f"Payment proof could not be decoded: {e}") from e

    async def negotiate(
        self,
        claim: ClaimSubmission,
        proof_header: Optional[str] = None,
    ) -> Union[Proceed, Challenge]:
        """
        Decide what to do with one submission.

        Errors from the Coordinator (conflict, rejection, outage, post-payment
        failure) propagate unchanged.
        """
        proof: Optional[PaymentProof] = None
        error = "Payment required"

        if proof_header:
            try:
                proof = self.parse_proof(proof_header)
            except MalformedProof as e:
                logger.info(
                    "Malformed payment proof; issuing fresh challenge",
                    subject_id=claim.subject_id,
                    reason=e.detail,
                )
                error = e.detail

        if proof is not None:
            return Proceed(result=await self._coordinator.submit(claim, proof), proof=proof)

        existing = await self._coordinator.replay(claim)
        if existing is not None:
            return Proceed(result=existing)

        self._metrics.incr("challenges_issued")
        logger.debug("Issuing payment challenge", subject_id=claim.subject_id)
        return self.challenge(error)
