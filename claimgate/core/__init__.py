# Core registry services
#
# The coordinator and negotiator are imported from their modules
# (claimgate.core.coordinator, claimgate.core.negotiator); they depend on
# claimgate.clients, which in turn depends on the names below.
from .hasher import Hasher, CanonicalSerializationError
from .signer import Signer
from .errors import (
    RegistryError,
    MalformedSubmission,
    MalformedProof,
    PaymentRejected,
    PaymentFacilitatorUnavailable,
    SubmissionInProgress,
    ClaimConflict,
    ClaimNotFound,
    PostPaymentFailure,
    ContentStoreFailure,
    LedgerBroadcastFailure,
    InternalInconsistency,
)
from .config import (
    PricingConfig,
    ClientsConfig,
    CoordinatorConfig,
    RegistryConfig,
)

__all__ = [
    "Hasher",
    "CanonicalSerializationError",
    "Signer",
    "RegistryError",
    "MalformedSubmission",
    "MalformedProof",
    "PaymentRejected",
    "PaymentFacilitatorUnavailable",
    "SubmissionInProgress",
    "ClaimConflict",
    "ClaimNotFound",
    "PostPaymentFailure",
    "ContentStoreFailure",
    "LedgerBroadcastFailure",
    "InternalInconsistency",
    "PricingConfig",
    "ClientsConfig",
    "CoordinatorConfig",
    "RegistryConfig",
]
