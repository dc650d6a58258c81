"""
Leaf clients for the registry's three external collaborators.

Implementations are chosen here, from configuration only. The Coordinator
receives a RegistryClients bundle and never asks which implementation it got.
"""

from dataclasses import dataclass
from typing import Optional

import httpx

from ..core.config import ClientsConfig
from .content_store import (
    ContentStoreClient,
    InMemoryContentStore,
    LocalContentStore,
    PinataContentStore,
)
from .facilitator import (
    MockFacilitatorClient,
    PaymentFacilitatorClient,
    X402FacilitatorClient,
)
from .ledger import (
    HttpLedgerClient,
    LedgerClient,
    MockLedgerClient,
    TransactionHandle,
    TransactionStatus,
)


@dataclass
class RegistryClients:
    """The three leaf clients the Coordinator depends on."""
    facilitator: PaymentFacilitatorClient
    content_store: ContentStoreClient
    ledger: LedgerClient

    async def aclose(self) -> None:
        await self.facilitator.aclose()
        await self.content_store.aclose()
        await self.ledger.aclose()


def build_clients(
    config: ClientsConfig,
    http_client: Optional[httpx.AsyncClient] = None,
) -> RegistryClients:
    """
    Build the leaf clients named by configuration.

    Raises:
        ValueError: unknown driver or missing required setting
    """
    if config.facilitator_driver == "mock":
        facilitator: PaymentFacilitatorClient = MockFacilitatorClient()
    elif config.facilitator_driver == "x402":
        facilitator = X402FacilitatorClient(
            config.facilitator_url,
            http_client=http_client,
            timeout=config.verify_timeout_seconds,
        )
    else:
        raise ValueError(
            f"Unknown facilitator driver: {config.facilitator_driver}. "
            f"Valid values: mock, x402"
        )

    if config.content_store_driver == "memory":
        content_store: ContentStoreClient = InMemoryContentStore()
    elif config.content_store_driver == "local":
        content_store = LocalContentStore(config.content_store_dir)
    elif config.content_store_driver == "pinata":
        content_store = PinataContentStore(
            config.pinata_jwt or "",
            api_url=config.pinata_api_url,
            http_client=http_client,
            timeout=config.upload_timeout_seconds,
        )
    else:
        raise ValueError(
            f"Unknown content store driver: {config.content_store_driver}. "
            f"Valid values: memory, local, pinata"
        )

    if config.ledger_driver == "mock":
        ledger: LedgerClient = MockLedgerClient()
    elif config.ledger_driver == "http":
        if not config.ledger_url:
            raise ValueError("CLAIMGATE_LEDGER_URL is required for the http ledger driver")
        ledger = HttpLedgerClient(
            config.ledger_url,
            http_client=http_client,
            timeout=config.broadcast_timeout_seconds,
        )
    else:
        raise ValueError(
            f"Unknown ledger driver: {config.ledger_driver}. "
            f"Valid values: mock, http"
        )

    return RegistryClients(
        facilitator=facilitator,
        content_store=content_store,
        ledger=ledger,
    )


__all__ = [
    "RegistryClients",
    "build_clients",
    "PaymentFacilitatorClient",
    "X402FacilitatorClient",
    "MockFacilitatorClient",
    "ContentStoreClient",
    "InMemoryContentStore",
    "LocalContentStore",
    "PinataContentStore",
    "LedgerClient",
    "MockLedgerClient",
    "HttpLedgerClient",
    "TransactionHandle",
    "TransactionStatus",
]
