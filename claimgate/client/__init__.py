# Calling-agent side: sign payments and drive a submission to a final answer.

from .orchestrator import (
    OrchestratorState,
    RetryOrchestrator,
    RetryPolicy,
    SubmissionOutcome,
)
from .wallet import Ed25519Wallet, Wallet

__all__ = [
    "Ed25519Wallet",
    "OrchestratorState",
    "RetryOrchestrator",
    "RetryPolicy",
    "SubmissionOutcome",
    "Wallet",
]
