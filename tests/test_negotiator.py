"""
Tests for the Payment Challenge Negotiator (server side of x402).
"""

import asyncio
import base64
import json

import pytest

from claimgate.core import MalformedProof
from claimgate.core.negotiator import (
    CHALLENGE_HEADER,
    RECEIPT_HEADER,
    Challenge,
    PaymentChallengeNegotiator,
    Proceed,
)
from claimgate.observability import get_metrics
from claimgate.schemas import ClaimStatus, PaymentChallenge, PaymentReceipt


def encode(data: dict) -> str:
    return base64.b64encode(json.dumps(data).encode("utf-8")).decode("ascii")


class TestChallenge:
    """No usable proof: answer with what to pay."""

    def test_no_proof_gets_challenge(self, negotiator, claim, claim_ledger, pricing):
        outcome = asyncio.run(negotiator.negotiate(claim))

        assert isinstance(outcome, Challenge)
        decoded = PaymentChallenge.from_header(outcome.headers()[CHALLENGE_HEADER])
        assert decoded.x402_version == 1
        assert decoded.primary().max_amount_required == pricing.price_amount
        assert decoded.primary().currency == pricing.currency
        assert decoded.primary().pay_to == pricing.pay_to
        assert decoded.primary().resource == "/genesis/claim/submit"
        assert claim_ledger.count() == 0
        assert get_metrics().challenges_issued == 1

    def test_challenge_is_pure(self, negotiator):
        assert negotiator.challenge() == negotiator.challenge()

    def test_malformed_proof_gets_fresh_challenge(self, negotiator, claim, facilitator):
        outcome = asyncio.run(negotiator.negotiate(claim, "%%% not base64 %%%"))

        assert isinstance(outcome, Challenge)
        assert "could not be decoded" in outcome.challenge.error
        assert facilitator.calls == 0

    def test_proof_missing_fields_gets_challenge(self, negotiator, claim):
        header = encode({"amount": "0.0001", "currency": "USDC"})
        outcome = asyncio.run(negotiator.negotiate(claim, header))
        assert isinstance(outcome, Challenge)

    def test_parse_proof_rejects_non_object(self):
        with pytest.raises(MalformedProof):
            PaymentChallengeNegotiator.parse_proof(encode(["not", "an", "object"]))


class TestProceed:
    """A decodable proof goes to the coordinator."""

    def test_valid_proof_registers_with_receipt(self, negotiator, claim, proof):
        outcome = asyncio.run(negotiator.negotiate(claim, proof.to_header()))

        assert isinstance(outcome, Proceed)
        assert outcome.result.record.status == ClaimStatus.REGISTERED
        receipt = PaymentReceipt.from_header(outcome.headers()[RECEIPT_HEADER])
        assert receipt.payment_id == outcome.result.record.payment_id
        assert receipt.subject_id == claim.subject_id
        assert receipt.transaction_hash == outcome.result.record.transaction_hash

    def test_registered_claim_answered_without_challenge(self, negotiator, claim, proof):
        asyncio.run(negotiator.negotiate(claim, proof.to_header()))

        outcome = asyncio.run(negotiator.negotiate(claim))
        assert isinstance(outcome, Proceed)
        assert outcome.result.replayed
        assert outcome.headers() == {}
        assert get_metrics().challenges_issued == 0
