"""
Database Layer for the Claim Registry

Provides:
- PostgreSQL schema (schema.sql)
- ClaimLedger abstraction (InMemory for dev, Postgres for prod, cached reads)
- Connection configuration
"""

from .store import (
    ClaimLedger,
    InMemoryClaimLedger,
    PostgresClaimLedger,
    CachedClaimLedger,
    ClaimStoreError,
    ReservationConflict,
    PaymentReplayError,
    TransitionError,
    LockTimeoutError,
    StoreUnavailableError,
)
from .config import (
    ClaimStoreDriver,
    DatabaseConfig,
    create_claim_ledger,
    get_claimstore_driver,
    get_database_url,
)

__all__ = [
    "ClaimLedger",
    "InMemoryClaimLedger",
    "PostgresClaimLedger",
    "CachedClaimLedger",
    "ClaimStoreError",
    "ReservationConflict",
    "PaymentReplayError",
    "TransitionError",
    "LockTimeoutError",
    "StoreUnavailableError",
    "ClaimStoreDriver",
    "DatabaseConfig",
    "create_claim_ledger",
    "get_claimstore_driver",
    "get_database_url",
]
