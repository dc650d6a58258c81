"""
Claim Submission Coordinator

Drives one paid submission from verified payment to registered claim:

    1. Idempotency check   (claim ledger lookup)
    2. Payment verification (facilitator)
    3. Reserve              (claim ledger, atomic; consumes the payment id)
    4. Content commit       (content store)
    5. Ledger broadcast     (ledger client, then poll for confirmation)
    6. Commit               (claim ledger, Pending -> Registered)

GUARANTEES:
- At most one Registered record per subject_id
- At most one payment consumed per registration
- Nothing is persisted before step 3; everything after step 3 leaves a record

Steps 4 and 5 checkpoint their output on the Pending record, so a resumed
attempt (same-claim retry after failure, stale takeover, restart recovery)
skips whatever already succeeded and never touches the facilitator.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, TypeVar

from ..clients import RegistryClients, TransactionStatus
from ..db.store import (
    ClaimLedger,
    ClaimStoreError,
    LockTimeoutError,
    PaymentReplayError,
    ReservationConflict,
    TransitionError,
)
from ..observability import MetricsCollector, get_logger, get_metrics, redact
from ..schemas import ClaimRecord, ClaimStatus, ClaimSubmission, PaymentProof
from .config import ClientsConfig, CoordinatorConfig, PricingConfig
from .errors import (
    ClaimConflict,
    ClaimNotFound,
    ContentStoreFailure,
    InternalInconsistency,
    LedgerBroadcastFailure,
    PaymentFacilitatorUnavailable,
    PaymentRejected,
    PostPaymentFailure,
    SubmissionInProgress,
)
from .hasher import Hasher

logger = get_logger(__name__)

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SubmissionResult:
    """
    Outcome of a submission that did not raise.

    `replayed` is True when an existing Registered record was returned
    untouched. `payment_consumed` is True only when this call reserved
    the slot with a newly verified payment.
    """
    record: ClaimRecord
    replayed: bool = False
    payment_consumed: bool = False


class ClaimSubmissionCoordinator:
    """
    Orchestrates facilitator -> content store -> ledger -> claim ledger.

    The claim ledger is synchronous (thread-safe); its calls run in a worker
    thread so a PostgreSQL round trip never blocks the event loop.
    """

    def __init__(
        self,
        claim_ledger: ClaimLedger,
        clients: RegistryClients,
        pricing: Optional[PricingConfig] = None,
        clients_config: Optional[ClientsConfig] = None,
        config: Optional[CoordinatorConfig] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._ledger = claim_ledger
        self._clients = clients
        self._pricing = pricing or PricingConfig()
        self._timeouts = clients_config or ClientsConfig()
        self._config = config or CoordinatorConfig()
        self._metrics = metrics or get_metrics()
        self._clock = clock

    @property
    def claim_ledger(self) -> ClaimLedger:
        return self._ledger

    @property
    def pricing(self) -> PricingConfig:
        return self._pricing

    # ================================================================
    # Queries
    # ================================================================

    async def lookup(self, subject_id: str) -> ClaimRecord:
        """
        Current record for a subject.

        A Pending record whose transaction has since confirmed is committed
        on the way out.

        Raises:
            ClaimNotFound: no record exists
        """
        record = await self._store(self._ledger.get, subject_id)
        if record is None:
            raise ClaimNotFound(f"No claim for subject {subject_id}")
        return await self._reconcile(record)

    async def replay(self, claim: ClaimSubmission) -> Optional[SubmissionResult]:
        """
        Answer a submission from existing state, without a payment.

        Returns:
            The result if the subject's record settles the request
            (Registered replay, Pending record whose transaction has
            confirmed, resumed Failed attempt, stale takeover), None if a
            fresh payment is required.

        Raises:
            ClaimConflict: a different claim is registered for the subject
            SubmissionInProgress: another submission holds the slot
        """
        fingerprint = Hasher.fingerprint(claim)
        record = await self._store(self._ledger.get, claim.subject_id)

        if record is None:
            return None

        if record.status == ClaimStatus.REGISTERED:
            return self._replay_registered(record, fingerprint)

        if record.status == ClaimStatus.FAILED:
            if not record.matches(fingerprint):
                # A different claim may take a Failed slot, but only with a new payment
                return None
            try:
                resumed = await self._store(self._ledger.resume, claim.subject_id, fingerprint)
            except TransitionError as e:
                return await self._after_lost_race(e, fingerprint)
            logger.info(
                "Resuming failed claim without new payment",
                subject_id=claim.subject_id,
                payment_id=resumed.payment_id,
                attempts=resumed.attempts,
            )
            return SubmissionResult(record=await self._complete(resumed))

        # Pending
        if record.matches(fingerprint):
            record = await self._reconcile(record)
            if record.status == ClaimStatus.REGISTERED:
                return self._replay_registered(record, fingerprint)

            stale_before = self._clock() - timedelta(seconds=self._config.stale_pending_seconds)
            taken = await self._store(self._ledger.takeover, claim.subject_id, stale_before)
            if taken is not None:
                logger.warning(
                    "Taking over abandoned reservation",
                    subject_id=claim.subject_id,
                    payment_id=taken.payment_id,
                    attempts=taken.attempts,
                )
                return SubmissionResult(record=await self._complete(taken))

        self._metrics.incr("in_progress_refusals")
        raise SubmissionInProgress(
            f"A submission for {claim.subject_id} is already in progress"
        )

    # ================================================================
    # Submission
    # ================================================================

    async def submit(self, claim: ClaimSubmission, proof: PaymentProof) -> SubmissionResult:
        """
        Register `claim`, paid for by `proof`.

        Raises:
            ClaimConflict, SubmissionInProgress: from the idempotency check
            PaymentRejected: facilitator denied, or the payment was already used
            PaymentFacilitatorUnavailable: retry with the same proof
            ContentStoreFailure, LedgerBroadcastFailure: the record is Failed
                (attached as `error.record`); retry without paying again
        """
        # 1. Idempotency check
        existing = await self.replay(claim)
        if existing is not None:
            return existing

        fingerprint = Hasher.fingerprint(claim)
        claim_id = Hasher.claim_id(fingerprint)

        # 2. Payment verification
        verdict = await self._verify(claim, proof)

        # 3. Reserve
        try:
            record = await self._store(
                self._ledger.reserve,
                claim.subject_id,
                claim_id=claim_id,
                claim_type=claim.claim_type,
                fingerprint=fingerprint,
                payment_id=verdict.payment_id,
                content=Hasher.content_bytes(claim).decode("utf-8"),
            )
        except ReservationConflict as e:
            if e.existing.status == ClaimStatus.REGISTERED:
                return self._replay_registered(e.existing, fingerprint)
            self._metrics.incr("in_progress_refusals")
            raise SubmissionInProgress(
                f"A submission for {claim.subject_id} is already in progress"
            ) from e
        except PaymentReplayError as e:
            self._metrics.incr("payment_rejections")
            logger.warning(
                "Rejected replayed payment",
                subject_id=claim.subject_id,
                payment_id=e.payment_id,
            )
            raise PaymentRejected("Payment proof has already been used") from e

        logger.info(
            "Claim reserved",
            subject_id=record.subject_id,
            claim_id=record.claim_id,
            payment_id=record.payment_id,
        )

        # 4-6. Content commit, ledger broadcast, commit
        final = await self._complete(record)
        return SubmissionResult(record=final, payment_consumed=True)

    async def recover_pending(self, force: bool = False) -> list[ClaimRecord]:
        """
        Resume abandoned Pending records (startup recovery).

        Only steps 4-6 are re-run; payment is never re-verified. Records
        younger than the stale threshold are left to their owner unless
        `force` is set.
        """
        threshold = 0 if force else self._config.stale_pending_seconds
        stale_before = self._clock() - timedelta(seconds=threshold)
        pending = await self._store(self._ledger.list_pending)

        recovered = []
        for record in pending:
            if record.updated_at > stale_before:
                continue
            taken = await self._store(self._ledger.takeover, record.subject_id, stale_before)
            if taken is None:
                continue

            self._metrics.incr("recoveries")
            logger.info(
                "Recovering pending claim",
                subject_id=taken.subject_id,
                payment_id=taken.payment_id,
                has_content_address=taken.content_address is not None,
                has_transaction=taken.transaction_hash is not None,
            )
            try:
                recovered.append(await self._complete(taken))
            except PostPaymentFailure as e:
                recovered.append(e.record)
            except InternalInconsistency as e:
                logger.error(
                    "Pending claim cannot be recovered",
                    subject_id=taken.subject_id,
                    error=e.detail,
                )

        return recovered

    # ================================================================
    # Steps
    # ================================================================

    def _replay_registered(self, record: ClaimRecord, fingerprint: str) -> SubmissionResult:
        if not record.matches(fingerprint):
            self._metrics.incr("conflicts")
            logger.info(
                "Conflicting claim for registered subject",
                subject_id=record.subject_id,
                claim_id=record.claim_id,
            )
            raise ClaimConflict(
                f"A different claim is already registered for {record.subject_id}"
            )
        if not record.transaction_hash or not record.content_address:
            raise InternalInconsistency(
                f"Registered claim for {record.subject_id} is missing its ledger artifacts"
            )
        self._metrics.incr("idempotent_replays")
        return SubmissionResult(record=record, replayed=True)

    async def _after_lost_race(self, error: TransitionError, fingerprint: str) -> SubmissionResult:
        """Another caller moved the record between our read and our write."""
        current = error.current
        if current is not None and current.status == ClaimStatus.REGISTERED:
            return self._replay_registered(current, fingerprint)
        self._metrics.incr("in_progress_refusals")
        raise SubmissionInProgress(str(error)) from error

    async def _reconcile(self, record: ClaimRecord) -> ClaimRecord:
        """
        Commit a Pending record whose broadcast transaction has confirmed.

        Anything short of a confirmation leaves the record to its owner or
        to stale takeover. Commit only succeeds from Pending, so racing the
        owner is harmless.
        """
        if record.status != ClaimStatus.PENDING or record.transaction_hash is None:
            return record

        try:
            status = await self._stage(
                "confirm",
                self._clients.ledger.get_status(record.transaction_hash),
                self._timeouts.broadcast_timeout_seconds,
            )
        except (LedgerBroadcastFailure, asyncio.TimeoutError) as e:
            logger.warning(
                "Could not poll pending transaction",
                subject_id=record.subject_id,
                transaction_hash=record.transaction_hash,
                error=str(e) or type(e).__name__,
            )
            return record
        if status != TransactionStatus.CONFIRMED:
            return record

        try:
            registered = await self._store(
                self._ledger.commit,
                record.subject_id,
                content_address=record.content_address,
                transaction_hash=record.transaction_hash,
            )
        except TransitionError as e:
            if e.current is None:
                raise InternalInconsistency(
                    f"Pending claim for {record.subject_id} vanished during reconciliation"
                ) from e
            return e.current

        self._metrics.incr("registrations")
        logger.info(
            "Pending claim reconciled with ledger",
            subject_id=registered.subject_id,
            claim_id=registered.claim_id,
            transaction_hash=registered.transaction_hash,
        )
        return registered

    async def _verify(self, claim: ClaimSubmission, proof: PaymentProof):
        price = self._pricing.price_spec()
        try:
            verdict = await self._stage(
                "verify",
                self._clients.facilitator.verify(proof, price),
                self._timeouts.verify_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            self._metrics.incr("facilitator_outages")
            raise PaymentFacilitatorUnavailable("Facilitator did not answer in time") from e
        except PaymentFacilitatorUnavailable:
            self._metrics.incr("facilitator_outages")
            raise

        if not verdict.verified:
            self._metrics.incr("payment_rejections")
            logger.info(
                "Payment rejected",
                subject_id=claim.subject_id,
                payer=redact(proof.payer_address),
                reason=verdict.reason,
            )
            raise PaymentRejected(verdict.reason or "Payment was not verified")

        if not verdict.payment_id:
            raise InternalInconsistency("Facilitator verified a payment without an id")

        self._metrics.incr("submissions_proceeded")
        return verdict

    async def _complete(self, record: ClaimRecord) -> ClaimRecord:
        """
        Steps 4-6 for a Pending record this caller owns.

        Returns the Registered record, or the Pending record if the ledger
        has not confirmed within the confirmation timeout.
        """
        if not record.payment_id:
            raise InternalInconsistency(
                f"Reservation for {record.subject_id} has no payment id"
            )
        if record.content is None:
            raise InternalInconsistency(
                f"Reservation for {record.subject_id} has no stored content"
            )

        metadata = {
            "subject_id": record.subject_id,
            "claim_id": record.claim_id,
            "claim_type": record.claim_type.value,
            "fingerprint": record.fingerprint,
        }

        rejected = False
        try:
            # 4. Content commit
            if record.content_address is None:
                address = await self._post_payment_stage(
                    "upload",
                    self._clients.content_store.upload(record.content.encode("utf-8"), metadata),
                    self._timeouts.upload_timeout_seconds,
                    ContentStoreFailure,
                )
                record = await self._transition(
                    self._ledger.checkpoint, record.subject_id, content_address=address
                )
                if record.is_final:
                    return record

            # 5. Ledger broadcast
            if record.transaction_hash is None:
                handle = await self._post_payment_stage(
                    "broadcast",
                    self._clients.ledger.broadcast(record.content_address, metadata),
                    self._timeouts.broadcast_timeout_seconds,
                    LedgerBroadcastFailure,
                )
                record = await self._transition(
                    self._ledger.checkpoint,
                    record.subject_id,
                    transaction_hash=handle.transaction_hash,
                )
                if record.is_final:
                    return record
                initial_status = handle.status
            else:
                initial_status = TransactionStatus.PENDING

            status = await self._await_confirmation(record.transaction_hash, initial_status)
            if status == TransactionStatus.FAILED:
                rejected = True
                raise LedgerBroadcastFailure(
                    f"Transaction {record.transaction_hash} was rejected by the ledger"
                )

        except PostPaymentFailure as e:
            # A rejected transaction is dead; the retry must broadcast again
            failed = await self._transition(
                self._ledger.mark_failed,
                record.subject_id,
                e.kind,
                e.detail,
                clear_transaction=rejected,
            )
            if failed.is_final:
                return failed
            self._metrics.incr("post_payment_failures")
            logger.warning(
                "Post-payment stage failed",
                subject_id=failed.subject_id,
                stage=e.stage,
                failure_kind=e.kind,
                reason=e.detail,
                payment_id=failed.payment_id,
            )
            e.record = failed
            raise

        if status != TransactionStatus.CONFIRMED:
            logger.warning(
                "Ledger confirmation timed out; leaving claim pending",
                subject_id=record.subject_id,
                transaction_hash=record.transaction_hash,
            )
            return record

        # 6. Commit
        registered = await self._transition(
            self._ledger.commit,
            record.subject_id,
            content_address=record.content_address,
            transaction_hash=record.transaction_hash,
        )
        self._metrics.incr("registrations")
        logger.info(
            "Claim registered",
            subject_id=registered.subject_id,
            claim_id=registered.claim_id,
            content_address=registered.content_address,
            transaction_hash=registered.transaction_hash,
        )
        return registered

    async def _await_confirmation(
        self,
        transaction_hash: str,
        status: TransactionStatus,
    ) -> TransactionStatus:
        """Poll the ledger until the transaction settles or the timeout passes."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._timeouts.confirmation_timeout_seconds

        while status == TransactionStatus.PENDING:
            status = await self._post_payment_stage(
                "confirm",
                self._clients.ledger.get_status(transaction_hash),
                self._timeouts.broadcast_timeout_seconds,
                LedgerBroadcastFailure,
            )
            if status != TransactionStatus.PENDING or loop.time() >= deadline:
                break
            await asyncio.sleep(self._timeouts.confirmation_poll_interval_seconds)

        return status

    # ================================================================
    # Plumbing
    # ================================================================

    async def _stage(self, name: str, call: Awaitable[T], timeout: float) -> T:
        """Await one external call under its timeout, recording latency."""
        start = time.perf_counter()
        try:
            return await asyncio.wait_for(call, timeout=timeout)
        finally:
            self._metrics.record_stage(name, (time.perf_counter() - start) * 1000)

    async def _post_payment_stage(
        self,
        name: str,
        call: Awaitable[T],
        timeout: float,
        failure: type[PostPaymentFailure],
    ) -> T:
        """A stage after reservation: timeouts become that stage's failure."""
        try:
            return await self._stage(name, call, timeout)
        except asyncio.TimeoutError as e:
            raise failure(f"{name} timed out after {timeout}s") from e

    async def _transition(self, operation: Callable[..., ClaimRecord], *args, **kwargs) -> ClaimRecord:
        """
        Run a claim-ledger transition on a record this caller owns.

        If another caller registered the claim meanwhile, its record wins.
        """
        try:
            return await self._store(operation, *args, **kwargs)
        except TransitionError as e:
            current = e.current
            if current is not None and current.status == ClaimStatus.REGISTERED:
                logger.info(
                    "Claim was completed by another worker",
                    subject_id=current.subject_id,
                )
                return current
            raise InternalInconsistency(
                f"Claim ledger rejected a transition for a reserved claim: {e}"
            ) from e

    async def _store(self, operation: Callable[..., T], *args, **kwargs) -> T:
        """Run a synchronous claim-ledger call off the event loop."""
        try:
            return await asyncio.to_thread(operation, *args, **kwargs)
        except (ReservationConflict, PaymentReplayError, TransitionError):
            raise
        except LockTimeoutError as e:
            self._metrics.incr("in_progress_refusals")
            raise SubmissionInProgress(str(e)) from e
        except ClaimStoreError as e:
            logger.error("Claim ledger error", error=str(e))
            raise InternalInconsistency(f"Claim ledger error: {e}") from e
