"""
Claim Ledger Abstraction

This module defines the ClaimLedger interface and provides its implementations:
- InMemoryClaimLedger: For development and testing
- PostgresClaimLedger: For production with full durability and concurrency safety
- CachedClaimLedger: Read-through cache in front of either

The ClaimLedger is responsible for:
- The per-subject idempotency slot (one record per subject_id)
- Atomic reservation and single-use payment consumption
- Every status transition (Pending -> Registered | Failed, Failed -> Pending)

The Coordinator retains responsibility for:
- Payment verification
- Calling the content store and the ledger client
- Deciding which transition to request

TRANSITION CONTRACT:
Every mutation is a compare-and-swap on the record's current status.

    reserve      (absent | Failed)   -> Pending
    checkpoint   Pending             -> Pending   (progress only)
    commit       Pending             -> Registered
    mark_failed  Pending             -> Failed
    resume       Failed              -> Pending   (same fingerprint, same payment)
    takeover     stale Pending       -> Pending   (updated_at bumped)

A Registered record is never modified again.
"""

from abc import ABC, abstractmethod
from collections import OrderedDict
from contextlib import contextmanager
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Generator, Optional

from ..schemas import ClaimRecord, ClaimStatus, ClaimType
from ..observability import get_logger

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================
# EXCEPTIONS
# ============================================================

class ClaimStoreError(Exception):
    """Base exception for claim ledger errors."""
    pass


class ReservationConflict(ClaimStoreError):
    """Raised when a subject's slot is held by a Pending or Registered record."""

    def __init__(self, existing: ClaimRecord):
        super().__init__(
            f"Subject {existing.subject_id} already holds a "
            f"{existing.status.value} record"
        )
        self.existing = existing


class PaymentReplayError(ClaimStoreError):
    """Raised when a payment id has already been consumed by a reservation."""

    def __init__(self, payment_id: str, subject_id: Optional[str] = None):
        super().__init__(f"Payment {payment_id} has already been consumed")
        self.payment_id = payment_id
        self.subject_id = subject_id


class TransitionError(ClaimStoreError):
    """Raised when a record is not in the state a transition requires."""

    def __init__(self, message: str, current: Optional[ClaimRecord] = None):
        super().__init__(message)
        self.current = current


class LockTimeoutError(ClaimStoreError):
    """Raised when lock acquisition times out (slot busy)."""
    pass


class StoreUnavailableError(ClaimStoreError):
    """Raised when the backing store cannot be reached."""
    pass


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class ClaimLedger(ABC):
    """
    Abstract base class for the claim ledger.

    The ClaimLedger is the single source of truth for:
    - Whether a subject has a claim in flight or registered
    - Which payment ids have been consumed

    Implementations must ensure:
    1. reserve() is atomic: of N concurrent callers for one subject, one wins
    2. A consumed payment id can never reserve a second slot
    3. Registered records are never mutated
    4. Lookup by subject_id is the only access path the core depends on
    """

    @abstractmethod
    def get(self, subject_id: str) -> Optional[ClaimRecord]:
        """Get the record for a subject, or None."""
        pass

    @abstractmethod
    def reserve(
        self,
        subject_id: str,
        *,
        claim_id: str,
        claim_type: ClaimType,
        fingerprint: str,
        payment_id: str,
        content: Optional[str] = None,
    ) -> ClaimRecord:
        """
        Atomically create a Pending record and consume the payment id.

        A Failed record for the subject is replaced.

        Raises:
            ReservationConflict: subject holds a Pending or Registered record
            PaymentReplayError: payment id already consumed
        """
        pass

    @abstractmethod
    def checkpoint(
        self,
        subject_id: str,
        *,
        content_address: Optional[str] = None,
        transaction_hash: Optional[str] = None,
    ) -> ClaimRecord:
        """Persist stage progress on a Pending record."""
        pass

    @abstractmethod
    def commit(
        self,
        subject_id: str,
        *,
        content_address: str,
        transaction_hash: str,
    ) -> ClaimRecord:
        """Transition Pending -> Registered."""
        pass

    @abstractmethod
    def mark_failed(
        self,
        subject_id: str,
        kind: str,
        reason: str,
        clear_transaction: bool = False,
    ) -> ClaimRecord:
        """
        Transition Pending -> Failed, retaining the error for diagnosis.

        `clear_transaction` drops the recorded transaction hash, for a
        transaction the ledger rejected; a resumed attempt then broadcasts
        again. The content address is always kept.
        """
        pass

    @abstractmethod
    def resume(self, subject_id: str, fingerprint: str) -> ClaimRecord:
        """
        Transition Failed -> Pending for a retry of the same claim.

        The stored payment id is kept; no new payment is consumed.

        Raises:
            TransitionError: record absent, not Failed, or a different claim
        """
        pass

    @abstractmethod
    def takeover(self, subject_id: str, stale_before: datetime) -> Optional[ClaimRecord]:
        """
        Claim a Pending record nobody has touched since `stale_before`.

        Returns the record (with updated_at bumped) if this caller won,
        None otherwise.
        """
        pass

    @abstractmethod
    def list_pending(self) -> list[ClaimRecord]:
        """All Pending records, oldest first."""
        pass

    @abstractmethod
    def count(self) -> int:
        """Total number of records. Used as a health probe."""
        pass


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryClaimLedger(ClaimLedger):
    """
    In-memory implementation of ClaimLedger.

    Suitable for:
    - Development
    - Testing
    - Single-instance deployments without persistence requirements

    NOT suitable for:
    - Production (no durability)
    - Multi-instance deployments (no shared state)
    """

    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self._records: dict[str, ClaimRecord] = {}
        self._consumed_payments: dict[str, str] = {}
        self._clock = clock
        self._lock = Lock()

    def _require(self, subject_id: str, status: ClaimStatus) -> ClaimRecord:
        record = self._records.get(subject_id)
        if record is None:
            raise TransitionError(f"No record for subject {subject_id}")
        if record.status != status:
            raise TransitionError(
                f"Record for {subject_id} is {record.status.value}, "
                f"expected {status.value}",
                current=record,
            )
        return record

    def _replace(self, record: ClaimRecord, **changes) -> ClaimRecord:
        changes.setdefault("updated_at", self._clock())
        updated = record.model_copy(update=changes)
        self._records[record.subject_id] = updated
        return updated

    def get(self, subject_id: str) -> Optional[ClaimRecord]:
        return self._records.get(subject_id)

    def reserve(
        self,
        subject_id: str,
        *,
        claim_id: str,
        claim_type: ClaimType,
        fingerprint: str,
        payment_id: str,
        content: Optional[str] = None,
    ) -> ClaimRecord:
        with self._lock:
            existing = self._records.get(subject_id)
            if existing is not None and existing.status != ClaimStatus.FAILED:
                raise ReservationConflict(existing)

            if payment_id in self._consumed_payments:
                raise PaymentReplayError(payment_id, self._consumed_payments[payment_id])

            now = self._clock()
            record = ClaimRecord(
                subject_id=subject_id,
                claim_id=claim_id,
                claim_type=claim_type,
                fingerprint=fingerprint,
                payment_id=payment_id,
                status=ClaimStatus.PENDING,
                created_at=now,
                updated_at=now,
                content=content,
            )
            self._records[subject_id] = record
            self._consumed_payments[payment_id] = subject_id
            return record

    def checkpoint(
        self,
        subject_id: str,
        *,
        content_address: Optional[str] = None,
        transaction_hash: Optional[str] = None,
    ) -> ClaimRecord:
        with self._lock:
            record = self._require(subject_id, ClaimStatus.PENDING)
            changes = {}
            if content_address is not None:
                changes["content_address"] = content_address
            if transaction_hash is not None:
                changes["transaction_hash"] = transaction_hash
            return self._replace(record, **changes)

    def commit(
        self,
        subject_id: str,
        *,
        content_address: str,
        transaction_hash: str,
    ) -> ClaimRecord:
        with self._lock:
            record = self._require(subject_id, ClaimStatus.PENDING)
            return self._replace(
                record,
                status=ClaimStatus.REGISTERED,
                content_address=content_address,
                transaction_hash=transaction_hash,
                failure_kind=None,
                failure_reason=None,
            )

    def mark_failed(
        self,
        subject_id: str,
        kind: str,
        reason: str,
        clear_transaction: bool = False,
    ) -> ClaimRecord:
        with self._lock:
            record = self._require(subject_id, ClaimStatus.PENDING)
            changes = {}
            if clear_transaction:
                changes["transaction_hash"] = None
            return self._replace(
                record,
                status=ClaimStatus.FAILED,
                failure_kind=kind,
                failure_reason=reason,
                **changes,
            )

    def resume(self, subject_id: str, fingerprint: str) -> ClaimRecord:
        with self._lock:
            record = self._require(subject_id, ClaimStatus.FAILED)
            if record.fingerprint != fingerprint:
                raise TransitionError(
                    f"Failed record for {subject_id} belongs to a different claim",
                    current=record,
                )
            return self._replace(
                record,
                status=ClaimStatus.PENDING,
                attempts=record.attempts + 1,
                failure_kind=None,
                failure_reason=None,
            )

    def takeover(self, subject_id: str, stale_before: datetime) -> Optional[ClaimRecord]:
        with self._lock:
            record = self._records.get(subject_id)
            if record is None or record.status != ClaimStatus.PENDING:
                return None
            if record.updated_at > stale_before:
                return None
            return self._replace(record, attempts=record.attempts + 1)

    def list_pending(self) -> list[ClaimRecord]:
        with self._lock:
            pending = [
                r for r in self._records.values()
                if r.status == ClaimStatus.PENDING
            ]
        return sorted(pending, key=lambda r: r.updated_at)

    def count(self) -> int:
        return len(self._records)


# ============================================================
# POSTGRESQL IMPLEMENTATION
# ============================================================

_RECORD_COLUMNS = """
    subject_id,
    claim_id,
    claim_type,
    fingerprint,
    payment_id,
    status,
    content_address,
    transaction_hash,
    failure_kind,
    failure_reason,
    attempts,
    created_at,
    updated_at,
    content
"""


class PostgresClaimLedger(ClaimLedger):
    """
    PostgreSQL implementation of ClaimLedger.

    Provides:
    - Full ACID guarantees
    - Atomic reservation via INSERT ... ON CONFLICT DO UPDATE ... WHERE
    - Single-use payments via the consumed_payments primary key
    - Durability (records survive restarts, so recovery can find Pending ones)
    - Lock/statement timeouts to prevent hanging

    THREAD SAFETY:
    Every operation opens its own connection and transaction. The same
    instance can be shared across threads.

    Requirements:
    - PostgreSQL 12+
    - Tables created from schema.sql
    - psycopg2 for connection

    Usage:
        ledger = PostgresClaimLedger(connection_factory)
        record = ledger.reserve("did:x:1", claim_id=..., ...)
    """

    # Timeouts to prevent hanging under load
    LOCK_TIMEOUT_MS = 2000  # 2 seconds
    STATEMENT_TIMEOUT_MS = 10000  # 10 seconds

    # psycopg2 error codes for lock/statement timeout
    PGCODE_LOCK_NOT_AVAILABLE = '55P03'
    PGCODE_QUERY_CANCELED = '57014'
    PGCODE_UNIQUE_VIOLATION = '23505'

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        lock_timeout_ms: int = LOCK_TIMEOUT_MS,
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
    ):
        """
        Initialize PostgreSQL claim ledger.

        Args:
            connection_factory: Callable that returns a psycopg2 connection.
            lock_timeout_ms: How long to wait for row lock (ms). Default 2000.
            statement_timeout_ms: Max statement execution time (ms). Default 10000.
        """
        self._connection_factory = connection_factory
        self._lock_timeout_ms = lock_timeout_ms
        self._statement_timeout_ms = statement_timeout_ms

    @contextmanager
    def _transaction(self) -> Generator[Any, None, None]:
        """
        One transaction on one connection, committed on clean exit.

        Timeout failures are classified into LockTimeoutError /
        ClaimStoreError before they leave the context.
        """
        try:
            conn = self._connection_factory()
        except Exception as e:
            raise StoreUnavailableError(f"Cannot connect to claim ledger: {e}") from e

        conn.autocommit = False
        cursor = conn.cursor()
        committed = False

        try:
            # SET LOCAL ensures timeouts are transaction-scoped and won't leak
            cursor.execute(f"SET LOCAL lock_timeout = '{self._lock_timeout_ms}ms'")
            cursor.execute(f"SET LOCAL statement_timeout = '{self._statement_timeout_ms}ms'")

            try:
                yield cursor
            except ClaimStoreError:
                raise
            except Exception as e:
                kind = self._timeout_kind(e)
                if kind == "lock":
                    raise LockTimeoutError(
                        "Claim slot busy - could not acquire lock. Try again."
                    ) from e
                if kind is not None:
                    raise ClaimStoreError(
                        "Query timed out - statement took too long."
                    ) from e
                raise

            conn.commit()
            committed = True
        finally:
            if not committed:
                try:
                    conn.rollback()
                except Exception as e:
                    logger.warning("Rollback failed", error=str(e))
            try:
                cursor.close()
            finally:
                conn.close()

    def _timeout_kind(self, e: Exception) -> Optional[str]:
        """
        Determine the type of timeout from a PostgreSQL exception.

        Returns:
            "lock" - Lock-related failure (timeout waiting, or NOWAIT refusal)
            "statement" - Statement timeout (query took too long)
            "timeout" - Some timeout but unclear which
            None - Not a timeout error

        NOTE: PostgreSQL uses 57014 (query_canceled) for BOTH lock_timeout and
        statement_timeout. We distinguish by checking the error message.
        """
        pgcode = getattr(e, 'pgcode', None)
        err_msg = (getattr(e, 'pgerror', None) or str(e)).lower()

        if pgcode == self.PGCODE_LOCK_NOT_AVAILABLE:
            return "lock"

        if pgcode == self.PGCODE_QUERY_CANCELED:
            if 'lock timeout' in err_msg or 'lock_timeout' in err_msg:
                return "lock"
            if 'statement timeout' in err_msg or 'statement_timeout' in err_msg:
                return "statement"
            return "timeout"

        if 'lock' in err_msg and 'timeout' in err_msg:
            return "lock"
        if 'statement' in err_msg and 'timeout' in err_msg:
            return "statement"

        return None

    def _fetch(self, cursor, subject_id: str, for_update: bool = False) -> Optional[ClaimRecord]:
        lock = " FOR UPDATE" if for_update else ""
        cursor.execute(
            f"SELECT {_RECORD_COLUMNS} FROM claim_records WHERE subject_id = %s{lock}",
            (subject_id,),
        )
        row = cursor.fetchone()
        return self._row_to_record(row) if row else None

    def _require(self, cursor, subject_id: str, status: ClaimStatus) -> ClaimRecord:
        record = self._fetch(cursor, subject_id, for_update=True)
        if record is None:
            raise TransitionError(f"No record for subject {subject_id}")
        if record.status != status:
            raise TransitionError(
                f"Record for {subject_id} is {record.status.value}, "
                f"expected {status.value}",
                current=record,
            )
        return record

    def _update(self, cursor, subject_id: str, **changes) -> ClaimRecord:
        assignments = ", ".join(f"{column} = %s" for column in changes)
        values = [
            v.value if isinstance(v, ClaimStatus) else v
            for v in changes.values()
        ]
        cursor.execute(
            f"""
            UPDATE claim_records
            SET {assignments}, updated_at = now()
            WHERE subject_id = %s
            RETURNING {_RECORD_COLUMNS}
            """,
            (*values, subject_id),
        )
        return self._row_to_record(cursor.fetchone())

    def get(self, subject_id: str) -> Optional[ClaimRecord]:
        with self._transaction() as cursor:
            return self._fetch(cursor, subject_id)

    def reserve(
        self,
        subject_id: str,
        *,
        claim_id: str,
        claim_type: ClaimType,
        fingerprint: str,
        payment_id: str,
        content: Optional[str] = None,
    ) -> ClaimRecord:
        conflict: Optional[ClaimRecord] = None
        with self._transaction() as cursor:
            # Replaces a Failed row; leaves Pending/Registered rows untouched
            cursor.execute(
                f"""
                INSERT INTO claim_records (
                    subject_id, claim_id, claim_type, fingerprint, payment_id,
                    status, attempts, created_at, updated_at, content
                ) VALUES (%s, %s, %s, %s, %s, 'pending', 1, now(), now(), %s)
                ON CONFLICT (subject_id) DO UPDATE SET
                    claim_id = EXCLUDED.claim_id,
                    claim_type = EXCLUDED.claim_type,
                    fingerprint = EXCLUDED.fingerprint,
                    payment_id = EXCLUDED.payment_id,
                    content = EXCLUDED.content,
                    status = 'pending',
                    content_address = NULL,
                    transaction_hash = NULL,
                    failure_kind = NULL,
                    failure_reason = NULL,
                    attempts = 1,
                    created_at = now(),
                    updated_at = now()
                WHERE claim_records.status = 'failed'
                RETURNING {_RECORD_COLUMNS}
                """,
                (subject_id, claim_id, claim_type.value, fingerprint, payment_id, content),
            )
            row = cursor.fetchone()
            if row is None:
                # ON CONFLICT ... WHERE locked the row, so this read is stable
                conflict = self._fetch(cursor, subject_id)
            else:
                cursor.execute(
                    """
                    INSERT INTO consumed_payments (payment_id, subject_id, consumed_at)
                    VALUES (%s, %s, now())
                    ON CONFLICT (payment_id) DO NOTHING
                    RETURNING payment_id
                    """,
                    (payment_id, subject_id),
                )
                if cursor.fetchone() is None:
                    # Undo the reservation along with the transaction
                    raise PaymentReplayError(payment_id)
                return self._row_to_record(row)

        if conflict is None:
            # The conflicting row was deleted between the insert and the re-read
            raise TransitionError(f"Record for {subject_id} disappeared during reservation")
        raise ReservationConflict(conflict)

    def checkpoint(
        self,
        subject_id: str,
        *,
        content_address: Optional[str] = None,
        transaction_hash: Optional[str] = None,
    ) -> ClaimRecord:
        with self._transaction() as cursor:
            record = self._require(cursor, subject_id, ClaimStatus.PENDING)
            return self._update(
                cursor,
                subject_id,
                content_address=content_address or record.content_address,
                transaction_hash=transaction_hash or record.transaction_hash,
            )

    def commit(
        self,
        subject_id: str,
        *,
        content_address: str,
        transaction_hash: str,
    ) -> ClaimRecord:
        with self._transaction() as cursor:
            self._require(cursor, subject_id, ClaimStatus.PENDING)
            return self._update(
                cursor,
                subject_id,
                status=ClaimStatus.REGISTERED,
                content_address=content_address,
                transaction_hash=transaction_hash,
                failure_kind=None,
                failure_reason=None,
            )

    def mark_failed(
        self,
        subject_id: str,
        kind: str,
        reason: str,
        clear_transaction: bool = False,
    ) -> ClaimRecord:
        with self._transaction() as cursor:
            self._require(cursor, subject_id, ClaimStatus.PENDING)
            changes = {}
            if clear_transaction:
                changes["transaction_hash"] = None
            return self._update(
                cursor,
                subject_id,
                status=ClaimStatus.FAILED,
                failure_kind=kind,
                failure_reason=reason,
                **changes,
            )

    def resume(self, subject_id: str, fingerprint: str) -> ClaimRecord:
        with self._transaction() as cursor:
            record = self._require(cursor, subject_id, ClaimStatus.FAILED)
            if record.fingerprint != fingerprint:
                raise TransitionError(
                    f"Failed record for {subject_id} belongs to a different claim",
                    current=record,
                )
            return self._update(
                cursor,
                subject_id,
                status=ClaimStatus.PENDING,
                attempts=record.attempts + 1,
                failure_kind=None,
                failure_reason=None,
            )

    def takeover(self, subject_id: str, stale_before: datetime) -> Optional[ClaimRecord]:
        with self._transaction() as cursor:
            cursor.execute(
                f"""
                UPDATE claim_records
                SET attempts = attempts + 1, updated_at = now()
                WHERE subject_id = %s
                  AND status = 'pending'
                  AND updated_at <= %s
                RETURNING {_RECORD_COLUMNS}
                """,
                (subject_id, stale_before),
            )
            row = cursor.fetchone()
            return self._row_to_record(row) if row else None

    def list_pending(self) -> list[ClaimRecord]:
        with self._transaction() as cursor:
            cursor.execute(
                f"""
                SELECT {_RECORD_COLUMNS}
                FROM claim_records
                WHERE status = 'pending'
                ORDER BY updated_at
                """
            )
            return [self._row_to_record(row) for row in cursor.fetchall()]

    def count(self) -> int:
        with self._transaction() as cursor:
            cursor.execute("SELECT COUNT(*) FROM claim_records")
            return cursor.fetchone()[0]

    def _row_to_record(self, row: tuple) -> ClaimRecord:
        """Convert a database row to a ClaimRecord."""
        return ClaimRecord(
            subject_id=row[0],
            claim_id=row[1],
            claim_type=ClaimType(row[2]),
            fingerprint=row[3],
            payment_id=row[4],
            status=ClaimStatus(row[5]),
            content_address=row[6],
            transaction_hash=row[7],
            failure_kind=row[8],
            failure_reason=row[9],
            attempts=row[10],
            created_at=row[11],
            updated_at=row[12],
            content=row[13],
        )


# ============================================================
# READ-THROUGH CACHE
# ============================================================

class CachedClaimLedger(ClaimLedger):
    """
    Read-through cache in front of another ClaimLedger.

    Only Registered records are cached: they are immutable, so a cached
    copy can never go stale. Pending and Failed records always read
    through, which means the cache can never answer "Registered" for a
    subject whose slot is still in flight.
    """

    def __init__(self, inner: ClaimLedger, max_entries: int = 10_000):
        self._inner = inner
        self._max_entries = max_entries
        self._cache: "OrderedDict[str, ClaimRecord]" = OrderedDict()
        self._lock = Lock()
        self.hits = 0
        self.misses = 0

    def _remember(self, record: Optional[ClaimRecord]) -> Optional[ClaimRecord]:
        if record is not None and record.status == ClaimStatus.REGISTERED:
            with self._lock:
                self._cache[record.subject_id] = record
                self._cache.move_to_end(record.subject_id)
                while len(self._cache) > self._max_entries:
                    self._cache.popitem(last=False)
        return record

    def get(self, subject_id: str) -> Optional[ClaimRecord]:
        with self._lock:
            cached = self._cache.get(subject_id)
            if cached is not None:
                self._cache.move_to_end(subject_id)
                self.hits += 1
                return cached
            self.misses += 1
        return self._remember(self._inner.get(subject_id))

    def reserve(self, subject_id: str, **kwargs) -> ClaimRecord:
        return self._inner.reserve(subject_id, **kwargs)

    def checkpoint(self, subject_id: str, **kwargs) -> ClaimRecord:
        return self._inner.checkpoint(subject_id, **kwargs)

    def commit(self, subject_id: str, **kwargs) -> ClaimRecord:
        return self._remember(self._inner.commit(subject_id, **kwargs))

    def mark_failed(
        self,
        subject_id: str,
        kind: str,
        reason: str,
        clear_transaction: bool = False,
    ) -> ClaimRecord:
        return self._inner.mark_failed(subject_id, kind, reason, clear_transaction=clear_transaction)

    def resume(self, subject_id: str, fingerprint: str) -> ClaimRecord:
        return self._inner.resume(subject_id, fingerprint)

    def takeover(self, subject_id: str, stale_before: datetime) -> Optional[ClaimRecord]:
        return self._inner.takeover(subject_id, stale_before)

    def list_pending(self) -> list[ClaimRecord]:
        return self._inner.list_pending()

    def count(self) -> int:
        return self._inner.count()
