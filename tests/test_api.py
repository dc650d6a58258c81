"""
Tests for the HTTP surface

Exercises the full x402 flow through FastAPI:
402 challenge -> paid retry -> 200 with receipt -> replay / conflict.
"""

import pytest
from fastapi.testclient import TestClient

from claimgate.core import CoordinatorConfig, RegistryConfig
from claimgate.db import InMemoryClaimLedger
from claimgate.main import create_app
from claimgate.schemas import PaymentChallenge, PaymentReceipt

SUBMIT = "/genesis/claim/submit"


@pytest.fixture
def claim_ledger():
    """Ledger on the real clock, matching the coordinator create_app builds."""
    return InMemoryClaimLedger()


def body(subject_id="did:example:alice", **claim_data):
    return {
        "did": subject_id,
        "claimType": "genesis",
        "claimData": claim_data or {"name": "Alice"},
    }


class TestSubmitFlow:
    """The paid submission endpoint."""

    @pytest.fixture
    def client(self, registry_config, claim_ledger, clients):
        app = create_app(config=registry_config, claim_ledger=claim_ledger, clients=clients)
        return TestClient(app)

    def pay(self, client, wallet, payload=None):
        challenge = client.post(SUBMIT, json=payload or body())
        assert challenge.status_code == 402
        price = PaymentChallenge.from_header(challenge.headers["PAYMENT-REQUIRED"]).primary()
        proof = wallet.sign_payment(price)
        return client.post(SUBMIT, json=payload or body(), headers={"X-PAYMENT": proof.to_header()})

    def test_unpaid_submission_gets_402(self, client, claim_ledger):
        response = client.post(SUBMIT, json=body())

        assert response.status_code == 402
        data = response.json()
        assert data["x402Version"] == 1
        assert data["accepts"][0]["maxAmountRequired"] == "0.0001"
        assert data["accepts"][0]["currency"] == "USDC"
        assert PaymentChallenge.from_header(response.headers["PAYMENT-REQUIRED"]).to_dict() == data
        assert claim_ledger.count() == 0

    def test_paid_submission_registers(self, client, wallet):
        response = self.pay(client, wallet)

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["replayed"] is False
        assert data["claim"]["status"] == "registered"
        assert data["claim"]["subject_id"] == "did:example:alice"
        assert data["claim"]["transaction_hash"].startswith("0x")
        assert "content" not in data["claim"]

        receipt = PaymentReceipt.from_header(response.headers["PAYMENT-RESPONSE"])
        assert receipt.payment_id == data["claim"]["payment_id"]

    def test_resubmission_is_replayed_without_payment(self, client, wallet):
        first = self.pay(client, wallet).json()

        response = client.post(SUBMIT, json=body())
        assert response.status_code == 200
        assert response.json()["replayed"] is True
        assert response.json()["claim"] == first["claim"]
        assert "PAYMENT-RESPONSE" not in response.headers

    def test_conflicting_claim(self, client, wallet):
        self.pay(client, wallet)

        response = client.post(SUBMIT, json=body(name="Mallory"))
        assert response.status_code == 409
        assert response.json()["error"]["kind"] == "claim_conflict"
        assert response.json()["error"]["retryable"] is False

    def test_malformed_submission(self, client):
        response = client.post(SUBMIT, json={"claimType": "genesis"})
        assert response.status_code == 422
        assert response.json()["error"]["kind"] == "malformed_submission"
        assert "did" in response.json()["error"]["detail"]

    def test_unknown_claim_type(self, client):
        response = client.post(SUBMIT, json={"did": "did:example:a", "claimType": "bogus"})
        assert response.status_code == 422

    def test_malformed_proof_gets_fresh_challenge(self, client, claim_ledger):
        response = client.post(SUBMIT, json=body(), headers={"X-PAYMENT": "garbage"})
        assert response.status_code == 402
        assert "PAYMENT-REQUIRED" in response.headers
        assert "decoded" in response.json()["error"]
        assert claim_ledger.count() == 0

    def test_rejected_payment(self, client, wallet, facilitator, claim_ledger):
        facilitator.deny(wallet.address)

        response = self.pay(client, wallet)
        assert response.status_code == 402
        assert response.json()["error"]["kind"] == "payment_rejected"
        assert "PAYMENT-REQUIRED" in response.headers
        assert claim_ledger.count() == 0
        assert client.get("/genesis/claim/did:example:alice").status_code == 404

    def test_facilitator_unavailable(self, client, wallet, facilitator):
        facilitator.available = False

        response = self.pay(client, wallet)
        assert response.status_code == 503
        assert response.json()["error"]["kind"] == "payment_facilitator_unavailable"
        assert response.json()["error"]["retryable"] is True

    def test_post_payment_failure_then_free_retry(self, client, wallet, content_store, facilitator):
        content_store.fail_next()

        failed = self.pay(client, wallet)
        assert failed.status_code == 502
        assert failed.json()["error"]["kind"] == "content_store_failure"
        assert failed.json()["claim"]["status"] == "failed"

        retried = client.post(SUBMIT, json=body())
        assert retried.status_code == 200
        assert retried.json()["claim"]["status"] == "registered"
        assert retried.json()["claim"]["payment_id"] == failed.json()["claim"]["payment_id"]
        assert facilitator.calls == 1

    def test_pending_confirmation_is_202(self, client, wallet, ledger_client):
        ledger_client.confirm_after = 10**9

        response = self.pay(client, wallet)
        assert response.status_code == 202
        assert response.json()["claim"]["status"] == "pending"
        assert "PAYMENT-RESPONSE" in response.headers

        in_progress = client.post(SUBMIT, json=body())
        assert in_progress.status_code == 409
        assert in_progress.json()["error"]["kind"] == "submission_in_progress"

    def test_resubmit_after_confirmation_is_registered(self, client, wallet, ledger_client, facilitator):
        ledger_client.confirm_after = 10**9
        assert self.pay(client, wallet).status_code == 202

        ledger_client.confirm_after = 0
        retried = client.post(SUBMIT, json=body())
        assert retried.status_code == 200
        assert retried.json()["claim"]["status"] == "registered"
        assert facilitator.calls == 1


class TestReadEndpoints:
    """Lookup, info, health and metrics."""

    @pytest.fixture
    def client(self, registry_config, claim_ledger, clients):
        app = create_app(config=registry_config, claim_ledger=claim_ledger, clients=clients)
        return TestClient(app)

    def test_lookup_missing(self, client):
        response = client.get("/genesis/claim/did:example:nobody")
        assert response.status_code == 404
        assert response.json()["error"]["kind"] == "not_found"

    def test_lookup_registered(self, client, wallet, pricing):
        proof = wallet.sign_payment(pricing.price_spec())
        client.post(SUBMIT, json=body(), headers={"X-PAYMENT": proof.to_header()})

        response = client.get("/genesis/claim/did:example:alice")
        assert response.status_code == 200
        assert response.json()["claim"]["status"] == "registered"

    def test_info_never_gated(self, client):
        response = client.get("/genesis/info")
        assert response.status_code == 200
        assert response.json()["pricing"]["amount"] == "0.0001"
        assert response.json()["endpoints"]["submitClaim"] == "POST /genesis/claim/submit"

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["checks"]["claim_ledger"]["status"] == "healthy"

    def test_unhealthy_ledger(self, client, claim_ledger, monkeypatch):
        def broken():
            raise RuntimeError("connection refused")

        monkeypatch.setattr(claim_ledger, "count", broken)
        response = client.get("/health")
        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"

    def test_metrics(self, client):
        client.post(SUBMIT, json=body())
        response = client.get("/metrics")
        assert response.status_code == 200
        assert response.json()["challenges_issued"] == 1

    def test_request_id_header(self, client):
        response = client.get("/genesis/info", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"


class TestStartupConfiguration:
    """A stale threshold shorter than one attempt would let takeover steal live work."""

    def test_defaults_are_consistent(self):
        config = RegistryConfig()
        config.validate()
        assert config.coordinator.stale_pending_seconds > config.clients.longest_attempt_seconds()

    def test_short_stale_threshold_refused_by_factory(self, registry_config, claim_ledger, clients):
        registry_config.coordinator = CoordinatorConfig(stale_pending_seconds=1.0)
        with pytest.raises(ValueError, match="CLAIMGATE_STALE_PENDING_SECONDS"):
            create_app(config=registry_config, claim_ledger=claim_ledger, clients=clients)

    def test_short_stale_threshold_refused_from_env(self, monkeypatch):
        monkeypatch.setenv("CLAIMGATE_CONFIRMATION_TIMEOUT_SECONDS", "600")
        monkeypatch.setenv("CLAIMGATE_STALE_PENDING_SECONDS", "300")
        with pytest.raises(ValueError, match="longest submission attempt"):
            RegistryConfig.from_env()

    def test_longer_stale_threshold_accepted_from_env(self, monkeypatch):
        monkeypatch.setenv("CLAIMGATE_CONFIRMATION_TIMEOUT_SECONDS", "600")
        monkeypatch.setenv("CLAIMGATE_STALE_PENDING_SECONDS", "900")
        config = RegistryConfig.from_env()
        assert config.coordinator.stale_pending_seconds == 900
