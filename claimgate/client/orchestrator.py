"""
Retry Orchestrator (calling-agent side of the x402 handshake)

State machine:

    Init -> Probed -> ChallengeReceived -> ProofAttached -> Retried -> Succeeded
                                                                    -> Failed

- Probe: send the claim without a proof, or with a cached proof that is
  still inside its validity window.
- On 402 with a challenge: sign a proof for the advertised price and retry.
- On PaymentRejected or ClaimConflict: stop. The proof is spent or invalid.
- On facilitator outage, submission-in-progress, post-payment failure or a
  transport error: back off exponentially and retry, reusing the proof only
  while it is fresh.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional

import httpx

from ..core.errors import (
    ClaimConflict,
    InternalInconsistency,
    PaymentRejected,
    RegistryError,
    SubmissionInProgress,
    error_from_dict,
)
from ..core.negotiator import CHALLENGE_HEADER, PROOF_HEADER, RECEIPT_HEADER
from ..observability import get_logger, redact
from ..schemas import (
    ClaimRecord,
    ClaimStatus,
    ClaimSubmission,
    HeaderDecodeError,
    PaymentChallenge,
    PaymentProof,
    PaymentReceipt,
    PriceSpec,
)
from .wallet import Wallet

logger = get_logger(__name__)

SUBMIT_PATH = "/genesis/claim/submit"
LOOKUP_PATH = "/genesis/claim/{subject_id}"


class OrchestratorState(str, Enum):
    INIT = "init"
    PROBED = "probed"
    CHALLENGE_RECEIVED = "challenge_received"
    PROOF_ATTACHED = "proof_attached"
    RETRIED = "retried"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class RetryPolicy:
    """Bounded exponential backoff."""
    max_attempts: int = 5
    base_delay: float = 0.5
    max_delay: float = 8.0
    multiplier: float = 2.0

    def delay(self, retry_number: int) -> float:
        """Delay before the given retry (1-based)."""
        return min(self.max_delay, self.base_delay * self.multiplier ** (retry_number - 1))


@dataclass
class SubmissionOutcome:
    """What the orchestrator ended with, and how it got there."""
    state: OrchestratorState
    record: Optional[ClaimRecord] = None
    error: Optional[RegistryError] = None
    receipt: Optional[PaymentReceipt] = None
    replayed: bool = False
    attempts: int = 0
    history: list[OrchestratorState] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state == OrchestratorState.SUCCEEDED


class RetryOrchestrator:
    """
    Drives one claim submission to a final answer.

    Usage:
        async with httpx.AsyncClient(base_url="https://registry") as http:
            orchestrator = RetryOrchestrator(http, Ed25519Wallet())
            outcome = await orchestrator.submit(claim)
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        wallet: Wallet,
        base_url: str = "",
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self._http = http_client
        self._wallet = wallet
        self._base_url = base_url.rstrip("/")
        self._policy = policy or RetryPolicy()
        self._sleep = sleep
        self._clock = clock
        self._cached_proof: Optional[PaymentProof] = None
        self._last_price: Optional[PriceSpec] = None

    @property
    def cached_proof(self) -> Optional[PaymentProof]:
        return self._cached_proof

    def _fresh(self, proof: Optional[PaymentProof]) -> Optional[PaymentProof]:
        if proof is not None and proof.is_fresh(self._clock()):
            return proof
        return None

    def _sign(self, price: PriceSpec) -> PaymentProof:
        proof = self._wallet.sign_payment(price)
        self._cached_proof = proof
        self._last_price = price
        logger.debug(
            "Signed payment proof",
            payer=redact(proof.payer_address),
            amount=str(proof.amount),
            currency=proof.currency,
        )
        return proof

    def _proof_for_retry(self, history: list) -> Optional[PaymentProof]:
        """The cached proof if still fresh, else a new one for the last known price."""
        proof = self._fresh(self._cached_proof)
        if proof is None and self._last_price is not None:
            proof = self._sign(self._last_price)
            history.append(OrchestratorState.PROOF_ATTACHED)
        return proof

    async def _post(self, claim: ClaimSubmission, proof: Optional[PaymentProof]) -> httpx.Response:
        headers = {PROOF_HEADER: proof.to_header()} if proof is not None else {}
        return await self._http.post(
            f"{self._base_url}{SUBMIT_PATH}",
            json=claim.model_dump(mode="json", by_alias=True, exclude_none=True),
            headers=headers,
        )

    @staticmethod
    def _parse_error(response: httpx.Response) -> tuple[RegistryError, Optional[ClaimRecord]]:
        try:
            body = response.json()
        except ValueError:
            return InternalInconsistency(f"Unreadable response (HTTP {response.status_code})"), None

        record = None
        if isinstance(body, dict) and isinstance(body.get("claim"), dict):
            record = ClaimRecord.model_validate(body["claim"])
        error_body = body.get("error") if isinstance(body, dict) else None
        if not isinstance(error_body, dict):
            return InternalInconsistency(f"Unexpected response (HTTP {response.status_code})"), record
        return error_from_dict(error_body, record=record), record

    @staticmethod
    def _parse_challenge(response: httpx.Response) -> Optional[PaymentChallenge]:
        header = response.headers.get(CHALLENGE_HEADER)
        if header:
            try:
                return PaymentChallenge.from_header(header)
            except HeaderDecodeError:
                pass
        try:
            return PaymentChallenge.model_validate(response.json())
        except ValueError:
            return None

    async def _await_final(self, subject_id: str) -> Optional[ClaimRecord]:
        """Poll the lookup endpoint until the record leaves Pending."""
        url = f"{self._base_url}{LOOKUP_PATH.format(subject_id=subject_id)}"
        for retry in range(1, self._policy.max_attempts + 1):
            await self._sleep(self._policy.delay(retry))
            try:
                response = await self._http.get(url)
            except httpx.TransportError:
                continue
            if response.status_code != 200:
                continue
            record = ClaimRecord.model_validate(response.json()["claim"])
            if record.status != ClaimStatus.PENDING:
                return record
        return None

    async def submit(self, claim: ClaimSubmission) -> SubmissionOutcome:
        """Run the state machine to completion for one claim."""
        history = [OrchestratorState.INIT]
        proof = self._fresh(self._cached_proof)
        last_error: Optional[RegistryError] = None
        last_record: Optional[ClaimRecord] = None
        retries = 0

        def finish(state, **kwargs) -> SubmissionOutcome:
            history.append(state)
            return SubmissionOutcome(state=state, attempts=attempt, history=history, **kwargs)

        for attempt in range(1, self._policy.max_attempts + 1):
            history.append(OrchestratorState.PROBED if attempt == 1 else OrchestratorState.RETRIED)

            try:
                response = await self._post(claim, proof)
            except httpx.TransportError as e:
                logger.warning(
                    "Transport error submitting claim",
                    subject_id=claim.subject_id,
                    attempt=attempt,
                    error=type(e).__name__,
                )
                retries += 1
                await self._sleep(self._policy.delay(retries))
                proof = self._fresh(proof)
                continue

            status = response.status_code

            if status in (200, 202):
                body = response.json()
                record = ClaimRecord.model_validate(body["claim"])
                receipt = None
                if response.headers.get(RECEIPT_HEADER):
                    receipt = PaymentReceipt.from_header(response.headers[RECEIPT_HEADER])
                # Spent, or not needed: never present this proof again
                self._cached_proof = None
                if record.status == ClaimStatus.PENDING:
                    record = await self._await_final(claim.subject_id) or record
                if record.status == ClaimStatus.REGISTERED:
                    return finish(
                        OrchestratorState.SUCCEEDED,
                        record=record,
                        receipt=receipt,
                        replayed=bool(body.get("replayed")),
                    )
                return finish(
                    OrchestratorState.FAILED,
                    record=record,
                    receipt=receipt,
                    error=SubmissionInProgress(
                        f"Claim for {claim.subject_id} is still {record.status.value}"
                    ),
                )

            if status == 402:
                error, _ = self._parse_error(response)
                if isinstance(error, PaymentRejected):
                    self._cached_proof = None
                    return finish(OrchestratorState.FAILED, error=error)

                challenge = self._parse_challenge(response)
                if challenge is None or not challenge.accepts:
                    return finish(
                        OrchestratorState.FAILED,
                        error=InternalInconsistency("402 response without a usable challenge"),
                    )
                history.append(OrchestratorState.CHALLENGE_RECEIVED)
                proof = self._sign(challenge.primary())
                history.append(OrchestratorState.PROOF_ATTACHED)
                continue

            error, record = self._parse_error(response)
            last_error, last_record = error, record or last_record

            if isinstance(error, ClaimConflict) or not error.retryable:
                return finish(OrchestratorState.FAILED, error=error, record=record)

            logger.info(
                "Retryable registry error",
                subject_id=claim.subject_id,
                kind=error.kind,
                attempt=attempt,
            )
            retries += 1
            await self._sleep(self._policy.delay(retries))
            if record is not None:
                # The paid attempt is on file; resubmitting resumes it for free
                self._cached_proof = None
                proof = None
            else:
                proof = self._proof_for_retry(history)

        return finish(
            OrchestratorState.FAILED,
            error=last_error or InternalInconsistency("Retry budget exhausted"),
            record=last_record,
        )
