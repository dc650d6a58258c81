"""
Registry Configuration

CONFIGURATION:
- CLAIMGATE_PRICE_AMOUNT: Price per submission (default: 0.0001)
- CLAIMGATE_CURRENCY: Currency symbol (default: USDC)
- CLAIMGATE_ASSET: Token contract or asset identifier
- CLAIMGATE_PAY_TO: Destination address for payments
- CLAIMGATE_NETWORK: Payment network (default: base-sepolia)
- CLAIMGATE_ACCEPTED_RAILS: Comma-separated payment rails (default: x402-exact)
- CLAIMGATE_MAX_TIMEOUT_SECONDS: Proof validity window advertised to clients (default: 120)

- CLAIMGATE_FACILITATOR_DRIVER: mock | x402 (default: mock)
- CLAIMGATE_FACILITATOR_URL: Facilitator base URL (default: https://x402.org/facilitator)
- CLAIMGATE_CONTENT_STORE_DRIVER: memory | local | pinata (default: memory)
- CLAIMGATE_CONTENT_STORE_DIR: Directory for the local content store
- CLAIMGATE_PINATA_JWT / CLAIMGATE_PINATA_API_URL: Pinning service credentials
- CLAIMGATE_LEDGER_DRIVER: mock | http (default: mock)
- CLAIMGATE_LEDGER_URL: Relayer base URL for the http ledger
- CLAIMGATE_VERIFY_TIMEOUT_SECONDS / CLAIMGATE_UPLOAD_TIMEOUT_SECONDS /
  CLAIMGATE_BROADCAST_TIMEOUT_SECONDS: Per-call timeouts
- CLAIMGATE_CONFIRMATION_POLL_INTERVAL_SECONDS / CLAIMGATE_CONFIRMATION_TIMEOUT_SECONDS

- CLAIMGATE_STALE_PENDING_SECONDS: Age after which a Pending record is abandoned (default: 300);
  must exceed the longest submission attempt (see ClientsConfig.longest_attempt_seconds)
- CLAIMGATE_RECOVER_ON_STARTUP: Resume stale Pending records at startup (default: true)
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from ..schemas import PaymentChallenge, PriceSpec


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in ("1", "true", "yes")


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = os.environ.get(name)
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class PricingConfig:
    """What a submission costs and where the money goes."""
    price_amount: Decimal = Decimal("0.0001")
    currency: str = "USDC"
    asset: str = "USDC"
    pay_to: str = "0x0000000000000000000000000000000000000000"
    network: str = "base-sepolia"
    accepted_rails: list[str] = field(default_factory=lambda: ["x402-exact"])
    max_timeout_seconds: int = 120
    resource: str = "/genesis/claim/submit"
    description: str = "Submit a claim to the genesis DID registry"

    @classmethod
    def from_env(cls) -> "PricingConfig":
        """Load configuration from environment variables."""
        defaults = cls()
        return cls(
            price_amount=Decimal(os.environ.get("CLAIMGATE_PRICE_AMOUNT", str(defaults.price_amount))),
            currency=os.environ.get("CLAIMGATE_CURRENCY", defaults.currency),
            asset=os.environ.get("CLAIMGATE_ASSET", defaults.asset),
            pay_to=os.environ.get("CLAIMGATE_PAY_TO", defaults.pay_to),
            network=os.environ.get("CLAIMGATE_NETWORK", defaults.network),
            accepted_rails=_env_list("CLAIMGATE_ACCEPTED_RAILS", defaults.accepted_rails),
            max_timeout_seconds=int(
                os.environ.get("CLAIMGATE_MAX_TIMEOUT_SECONDS", str(defaults.max_timeout_seconds))
            ),
            resource=os.environ.get("CLAIMGATE_RESOURCE", defaults.resource),
            description=os.environ.get("CLAIMGATE_DESCRIPTION", defaults.description),
        )

    def price_spec(self) -> PriceSpec:
        return PriceSpec(
            network=self.network,
            max_amount_required=self.price_amount,
            currency=self.currency,
            asset=self.asset,
            pay_to=self.pay_to,
            resource=self.resource,
            description=self.description,
            max_timeout_seconds=self.max_timeout_seconds,
            rails=list(self.accepted_rails),
        )

    def challenge(self, error: str = "Payment required") -> PaymentChallenge:
        return PaymentChallenge(error=error, accepts=[self.price_spec()])


@dataclass
class ClientsConfig:
    """Which leaf client implementations to use, and how long to wait on them."""
    facilitator_driver: str = "mock"
    facilitator_url: str = "https://x402.org/facilitator"

    content_store_driver: str = "memory"
    content_store_dir: str = "./var/content"
    pinata_jwt: Optional[str] = None
    pinata_api_url: str = "https://api.pinata.cloud"

    ledger_driver: str = "mock"
    ledger_url: Optional[str] = None

    verify_timeout_seconds: float = 10.0
    upload_timeout_seconds: float = 30.0
    broadcast_timeout_seconds: float = 30.0

    confirmation_poll_interval_seconds: float = 1.0
    confirmation_timeout_seconds: float = 60.0

    @classmethod
    def from_env(cls) -> "ClientsConfig":
        """Load configuration from environment variables."""
        defaults = cls()
        return cls(
            facilitator_driver=os.environ.get("CLAIMGATE_FACILITATOR_DRIVER", defaults.facilitator_driver).lower(),
            facilitator_url=os.environ.get("CLAIMGATE_FACILITATOR_URL", defaults.facilitator_url),
            content_store_driver=os.environ.get(
                "CLAIMGATE_CONTENT_STORE_DRIVER", defaults.content_store_driver
            ).lower(),
            content_store_dir=os.environ.get("CLAIMGATE_CONTENT_STORE_DIR", defaults.content_store_dir),
            pinata_jwt=os.environ.get("CLAIMGATE_PINATA_JWT") or None,
            pinata_api_url=os.environ.get("CLAIMGATE_PINATA_API_URL", defaults.pinata_api_url),
            ledger_driver=os.environ.get("CLAIMGATE_LEDGER_DRIVER", defaults.ledger_driver).lower(),
            ledger_url=os.environ.get("CLAIMGATE_LEDGER_URL") or None,
            verify_timeout_seconds=float(
                os.environ.get("CLAIMGATE_VERIFY_TIMEOUT_SECONDS", str(defaults.verify_timeout_seconds))
            ),
            upload_timeout_seconds=float(
                os.environ.get("CLAIMGATE_UPLOAD_TIMEOUT_SECONDS", str(defaults.upload_timeout_seconds))
            ),
            broadcast_timeout_seconds=float(
                os.environ.get("CLAIMGATE_BROADCAST_TIMEOUT_SECONDS", str(defaults.broadcast_timeout_seconds))
            ),
            confirmation_poll_interval_seconds=float(
                os.environ.get(
                    "CLAIMGATE_CONFIRMATION_POLL_INTERVAL_SECONDS",
                    str(defaults.confirmation_poll_interval_seconds),
                )
            ),
            confirmation_timeout_seconds=float(
                os.environ.get(
                    "CLAIMGATE_CONFIRMATION_TIMEOUT_SECONDS",
                    str(defaults.confirmation_timeout_seconds),
                )
            ),
        )

    def longest_attempt_seconds(self) -> float:
        """
        Upper bound on one post-payment attempt: upload, broadcast, the
        confirmation window, its final status poll and one poll interval.
        """
        return (
            self.upload_timeout_seconds
            + self.broadcast_timeout_seconds
            + self.confirmation_timeout_seconds
            + self.broadcast_timeout_seconds
            + self.confirmation_poll_interval_seconds
        )


@dataclass
class CoordinatorConfig:
    """Reservation lifetime and recovery behaviour."""
    stale_pending_seconds: float = 300.0
    recover_on_startup: bool = True

    @classmethod
    def from_env(cls) -> "CoordinatorConfig":
        """Load configuration from environment variables."""
        return cls(
            stale_pending_seconds=float(os.environ.get("CLAIMGATE_STALE_PENDING_SECONDS", "300")),
            recover_on_startup=_env_bool("CLAIMGATE_RECOVER_ON_STARTUP", True),
        )


@dataclass
class RegistryConfig:
    """Everything the application factory needs."""
    pricing: PricingConfig = field(default_factory=PricingConfig)
    clients: ClientsConfig = field(default_factory=ClientsConfig)
    coordinator: CoordinatorConfig = field(default_factory=CoordinatorConfig)

    @classmethod
    def from_env(cls) -> "RegistryConfig":
        config = cls(
            pricing=PricingConfig.from_env(),
            clients=ClientsConfig.from_env(),
            coordinator=CoordinatorConfig.from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """
        Reject settings that let stale takeover steal a live reservation.

        Raises:
            ValueError: stale_pending_seconds does not outlast one attempt
        """
        window = self.clients.longest_attempt_seconds()
        if self.coordinator.stale_pending_seconds <= window:
            raise ValueError(
                f"CLAIMGATE_STALE_PENDING_SECONDS ({self.coordinator.stale_pending_seconds:g}) "
                f"must exceed the longest submission attempt ({window:g}s: upload + broadcast "
                f"+ confirmation timeout + final poll + poll interval)"
            )
