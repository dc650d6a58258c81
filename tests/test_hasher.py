"""
Tests for canonical hashing, claim identity and payment signing.
"""

import json
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from claimgate.client import Ed25519Wallet
from claimgate.core import CanonicalSerializationError, Hasher, Signer
from claimgate.schemas import ClaimSubmission, ClaimType, PriceSpec

from conftest import make_claim


class TestHasher:
    """Test canonical hashing - fingerprints decide same-claim vs conflict."""

    def test_deterministic_hash(self):
        """Same input always produces same hash."""
        data = {"name": "test", "value": 42}
        assert Hasher.hash_data(data) == Hasher.hash_data(data)

    def test_sorted_keys(self):
        """Key order doesn't affect hash."""
        assert Hasher.hash_data({"b": 2, "a": 1}) == Hasher.hash_data({"a": 1, "b": 2})

    def test_recursively_sorted_keys(self):
        """Nested dictionary keys are also sorted."""
        data1 = {"outer": {"z": 1, "a": 2}, "inner": {"b": 3, "a": 4}}
        data2 = {"inner": {"a": 4, "b": 3}, "outer": {"a": 2, "z": 1}}
        assert Hasher.hash_data(data1) == Hasher.hash_data(data2)

    def test_null_handling(self):
        """Nulls are omitted from canonical form."""
        assert Hasher.canonicalize({"a": 1, "b": None}) == Hasher.canonicalize({"a": 1})

    def test_empty_string_preserved(self):
        """Empty strings are valid data and preserved."""
        assert Hasher.canonicalize({"a": ""}) != Hasher.canonicalize({"a": None})

    def test_datetime_requires_timezone(self):
        """Datetimes must be timezone-aware."""
        with pytest.raises(CanonicalSerializationError, match="Naive datetime"):
            Hasher.canonicalize({"timestamp": datetime(2024, 1, 1, 12, 0, 0)})

    def test_datetime_normalized_to_utc(self):
        """Same moment in different timezones hashes the same."""
        utc_time = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        other_time = datetime(2024, 1, 1, 17, 0, 0, tzinfo=timezone(timedelta(hours=5)))
        assert Hasher.hash_data({"t": utc_time}) == Hasher.hash_data({"t": other_time})

    def test_sets_and_bytes_rejected(self):
        """Sets have no order and bytes have no JSON form."""
        with pytest.raises(CanonicalSerializationError, match="set"):
            Hasher.canonicalize({"tags": {"a", "b"}})
        with pytest.raises(CanonicalSerializationError, match="bytes"):
            Hasher.canonicalize({"blob": b"\x00"})

    def test_floats_from_json_are_stable(self):
        """Clients send JSON numbers: integral floats equal ints, others keep repr."""
        assert Hasher.canonicalize({"n": 1.0}) == Hasher.canonicalize({"n": 1})
        assert Hasher.canonicalize({"n": 0.1}) != Hasher.canonicalize({"n": 0.10000001})

    def test_non_finite_float_rejected(self):
        with pytest.raises(CanonicalSerializationError, match="Non-finite"):
            Hasher.canonicalize({"n": float("nan")})

    def test_top_level_must_be_dict(self):
        with pytest.raises(CanonicalSerializationError, match="Only objects"):
            Hasher.canonicalize(["a", "b"])

    def test_version_injection(self):
        """Canonical output always includes __canon_v version marker."""
        canonical = Hasher.canonicalize({"foo": "bar"})
        assert canonical.startswith('{"__canon_v":1,')
        assert json.loads(canonical)["__canon_v"] == 1


class TestClaimIdentity:
    """Fingerprint, claim id and content address of a submission."""

    def test_fingerprint_ignores_payload_key_order(self):
        a = ClaimSubmission.model_validate(
            {"did": "did:example:a", "claimType": "genesis", "claimData": {"x": 1, "y": 2}}
        )
        b = ClaimSubmission.model_validate(
            {"did": "did:example:a", "claimType": "genesis", "claimData": {"y": 2, "x": 1}}
        )
        assert Hasher.fingerprint(a) == Hasher.fingerprint(b)

    def test_fingerprint_covers_every_field(self):
        base = make_claim()
        assert Hasher.fingerprint(base) != Hasher.fingerprint(make_claim(name="Bob"))
        assert Hasher.fingerprint(base) != Hasher.fingerprint(make_claim("did:example:bob"))
        other_type = base.model_copy(update={"claim_type": ClaimType.AUTH_CLAIM})
        assert Hasher.fingerprint(base) != Hasher.fingerprint(other_type)

    def test_claim_id_derived_from_fingerprint(self):
        fingerprint = Hasher.fingerprint(make_claim())
        claim_id = Hasher.claim_id(fingerprint)
        assert claim_id == f"claim_{fingerprint[:24]}"
        assert Hasher.claim_id(Hasher.fingerprint(make_claim())) == claim_id

    def test_content_address_is_digest_of_uploaded_bytes(self):
        claim = make_claim()
        data = Hasher.content_bytes(claim)
        address = Hasher.content_address(data)
        assert address.startswith("sha256:")
        assert address == f"sha256:{Hasher.fingerprint(claim)}"


class TestSigner:
    """Test Ed25519 signing."""

    def test_sign_and_verify(self):
        private, public = Signer.generate_keypair()
        signature = Signer.sign("test message", private)
        assert Signer.verify("test message", signature, public)

    def test_wrong_key_fails(self):
        private1, _ = Signer.generate_keypair()
        _, public2 = Signer.generate_keypair()
        assert not Signer.verify("message", Signer.sign("message", private1), public2)

    def test_malformed_signature_fails_closed(self):
        _, public = Signer.generate_keypair()
        assert not Signer.verify("message", "not-base64!!", public)
        assert not Signer.verify("message", "AAAA", public)

    def test_public_key_for(self):
        private, public = Signer.generate_keypair()
        assert Signer.public_key_for(private) == public


class TestWallet:
    """Proofs produced by Ed25519Wallet."""

    @pytest.fixture
    def price(self):
        return PriceSpec(
            network="base-sepolia",
            max_amount_required=Decimal("0.0001"),
            currency="USDC",
            asset="USDC",
            pay_to="0xabc",
            resource="/genesis/claim/submit",
            max_timeout_seconds=60,
        )

    def test_proof_matches_price(self, price):
        wallet = Ed25519Wallet(clock=lambda: 1_000)
        proof = wallet.sign_payment(price)
        assert proof.amount == Decimal("0.0001")
        assert proof.currency == "USDC"
        assert proof.pay_to == "0xabc"
        assert proof.network == "base-sepolia"
        assert proof.payer_address == wallet.address
        assert proof.valid_before == 1_060

    def test_signature_survives_header_round_trip(self, price):
        """The server verifies what it decodes, not what the client built."""
        proof = Ed25519Wallet().sign_payment(price)
        decoded = type(proof).from_header(proof.to_header())
        assert Signer.verify_authorization(
            decoded.authorization(), decoded.signature_or_receipt, decoded.payer_address
        )

    def test_every_proof_is_a_distinct_payment(self, price):
        wallet = Ed25519Wallet()
        first, second = wallet.sign_payment(price), wallet.sign_payment(price)
        assert first.nonce != second.nonce
        assert Hasher.payment_id(first) != Hasher.payment_id(second)
        assert Hasher.payment_id(first) == Hasher.payment_id(first)

    def test_freshness(self, price):
        proof = Ed25519Wallet().sign_payment(price)
        assert proof.is_fresh(time.time())
        assert not proof.is_fresh(time.time() + 61)
