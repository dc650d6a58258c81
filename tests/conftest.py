"""
Shared fixtures for the claim registry tests.

Everything runs in-process: in-memory claim ledger, mock facilitator,
in-memory content store and mock ledger client.
"""

from datetime import datetime, timedelta, timezone

import pytest

from claimgate.client import Ed25519Wallet
from claimgate.clients import (
    InMemoryContentStore,
    MockFacilitatorClient,
    MockLedgerClient,
    RegistryClients,
)
from claimgate.core.config import (
    ClientsConfig,
    CoordinatorConfig,
    PricingConfig,
    RegistryConfig,
)
from claimgate.core.coordinator import ClaimSubmissionCoordinator
from claimgate.core.negotiator import PaymentChallengeNegotiator
from claimgate.db import InMemoryClaimLedger
from claimgate.observability import get_metrics
from claimgate.schemas import ClaimSubmission, ClaimType


class FakeClock:
    """Settable UTC clock for the claim ledger."""

    def __init__(self):
        self.now = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def make_claim(subject_id: str = "did:example:alice", **payload) -> ClaimSubmission:
    return ClaimSubmission(
        subject_id=subject_id,
        claim_type=ClaimType.GENESIS,
        payload=payload or {"name": "Alice", "keys": ["ed25519:alice"]},
    )


@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics().reset()
    yield
    get_metrics().reset()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def claim_ledger(clock):
    return InMemoryClaimLedger(clock=clock)


@pytest.fixture
def pricing():
    return PricingConfig()


@pytest.fixture
def clients_config():
    """Short timeouts and fast confirmation polling."""
    return ClientsConfig(
        verify_timeout_seconds=0.5,
        upload_timeout_seconds=0.5,
        broadcast_timeout_seconds=0.5,
        confirmation_poll_interval_seconds=0.001,
        confirmation_timeout_seconds=0.2,
    )


@pytest.fixture
def coordinator_config():
    return CoordinatorConfig(stale_pending_seconds=300, recover_on_startup=False)


@pytest.fixture
def facilitator():
    return MockFacilitatorClient()


@pytest.fixture
def content_store():
    return InMemoryContentStore()


@pytest.fixture
def ledger_client():
    return MockLedgerClient()


@pytest.fixture
def clients(facilitator, content_store, ledger_client):
    return RegistryClients(
        facilitator=facilitator,
        content_store=content_store,
        ledger=ledger_client,
    )


@pytest.fixture
def coordinator(claim_ledger, clients, pricing, clients_config, coordinator_config, clock):
    return ClaimSubmissionCoordinator(
        claim_ledger,
        clients,
        pricing=pricing,
        clients_config=clients_config,
        config=coordinator_config,
        clock=clock,
    )


@pytest.fixture
def negotiator(coordinator, pricing):
    return PaymentChallengeNegotiator(coordinator, pricing=pricing)


@pytest.fixture
def registry_config(pricing, clients_config, coordinator_config):
    return RegistryConfig(
        pricing=pricing,
        clients=clients_config,
        coordinator=coordinator_config,
    )


@pytest.fixture
def wallet():
    return Ed25519Wallet()


@pytest.fixture
def claim():
    return make_claim()


@pytest.fixture
def proof(wallet, pricing):
    """A valid, fresh payment for the configured price."""
    return wallet.sign_payment(pricing.price_spec())
