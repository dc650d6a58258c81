"""
Ledger Clients

Broadcasts a registration transaction referencing a content address and
reports on its confirmation.

- LedgerClient: the boundary
- MockLedgerClient: deterministic, idempotent, with injectable failures
- HttpLedgerClient: relayer service over HTTP

Broadcast must be idempotent per (subject, content address): a retry of a
registration that already reached the ledger returns the same transaction
instead of writing a second one.
"""

import asyncio
import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import httpx

from ..core.errors import LedgerBroadcastFailure
from ..observability import get_logger

logger = get_logger(__name__)


class TransactionStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass(frozen=True)
class TransactionHandle:
    """What the ledger returns for a broadcast."""
    transaction_hash: str
    status: TransactionStatus = TransactionStatus.PENDING


class LedgerClient(ABC):
    """Append-only system of record for claim registrations."""

    @abstractmethod
    async def broadcast(self, content_address: str, metadata: dict) -> TransactionHandle:
        """
        Submit a registration transaction.

        Raises:
            LedgerBroadcastFailure: the transaction was not accepted
        """
        pass

    @abstractmethod
    async def get_status(self, transaction_hash: str) -> TransactionStatus:
        """
        Poll a previously broadcast transaction.

        Raises:
            LedgerBroadcastFailure: the ledger could not be queried
        """
        pass

    async def aclose(self) -> None:
        return None


class MockLedgerClient(LedgerClient):
    """
    In-process ledger.

    Transaction hashes are sha256(subject_id | content_address), so the same
    registration always maps to the same transaction. Set `confirm_after`
    to require that many status polls before confirmation.

    A rebroadcast of a rejected transaction is a fresh submission and is
    judged anew.
    """

    def __init__(self, confirm_after: int = 0, delay: float = 0.0):
        self.confirm_after = confirm_after
        self.delay = delay
        self.broadcasts = 0
        self.transactions: dict[str, dict] = {}
        self._polls: dict[str, int] = {}
        self._broadcast_failures = 0
        self._rejections = 0
        self._rejected: set[str] = set()

    def fail_next(self, count: int = 1) -> None:
        """Make the next `count` broadcasts fail."""
        self._broadcast_failures = count

    def reject_next(self, count: int = 1) -> None:
        """Accept the next `count` broadcasts, then report them as failed."""
        self._rejections = count

    def reject(self, transaction_hash: str) -> None:
        """Make an already broadcast transaction report as failed."""
        self._rejected.add(transaction_hash)

    @staticmethod
    def transaction_hash_for(subject_id: str, content_address: str) -> str:
        material = f"{subject_id}|{content_address}".encode("utf-8")
        return "0x" + hashlib.sha256(material).hexdigest()

    async def broadcast(self, content_address: str, metadata: dict) -> TransactionHandle:
        self.broadcasts += 1
        if self.delay:
            await asyncio.sleep(self.delay)

        if self._broadcast_failures > 0:
            self._broadcast_failures -= 1
            raise LedgerBroadcastFailure("Injected ledger broadcast failure")

        tx_hash = self.transaction_hash_for(metadata.get("subject_id", ""), content_address)
        self.transactions.setdefault(tx_hash, {
            "content_address": content_address,
            "metadata": dict(metadata),
        })
        self._polls.setdefault(tx_hash, 0)
        if self._rejections > 0:
            self._rejections -= 1
            self._rejected.add(tx_hash)
        else:
            self._rejected.discard(tx_hash)
        return TransactionHandle(transaction_hash=tx_hash)

    async def get_status(self, transaction_hash: str) -> TransactionStatus:
        if transaction_hash not in self.transactions:
            raise LedgerBroadcastFailure(f"Unknown transaction {transaction_hash}")
        if transaction_hash in self._rejected:
            return TransactionStatus.FAILED

        self._polls[transaction_hash] += 1
        if self._polls[transaction_hash] > self.confirm_after:
            return TransactionStatus.CONFIRMED
        return TransactionStatus.PENDING


class HttpLedgerClient(LedgerClient):
    """
    Ledger relayer over HTTP.

    Broadcast:
        POST {base_url}/transactions  {"contentAddress": ..., "metadata": {...}}
        -> {"transactionHash": "0x...", "status": "pending"}

    Status:
        GET {base_url}/transactions/{hash}
        -> {"status": "pending" | "confirmed" | "failed"}
    """

    def __init__(
        self,
        base_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(timeout=timeout)

    async def broadcast(self, content_address: str, metadata: dict) -> TransactionHandle:
        try:
            response = await self.client.post(
                f"{self.base_url}/transactions",
                json={"contentAddress": content_address, "metadata": metadata},
            )
            response.raise_for_status()
            data = response.json()
            return TransactionHandle(
                transaction_hash=data["transactionHash"],
                status=TransactionStatus(data.get("status", "pending")),
            )
        except httpx.HTTPError as e:
            raise LedgerBroadcastFailure(f"Ledger relayer error: {type(e).__name__}") from e
        except (ValueError, KeyError) as e:
            raise LedgerBroadcastFailure("Ledger relayer returned an unexpected response") from e

    async def get_status(self, transaction_hash: str) -> TransactionStatus:
        try:
            response = await self.client.get(f"{self.base_url}/transactions/{transaction_hash}")
            response.raise_for_status()
            return TransactionStatus(response.json()["status"])
        except httpx.HTTPError as e:
            raise LedgerBroadcastFailure(f"Ledger relayer error: {type(e).__name__}") from e
        except (ValueError, KeyError) as e:
            raise LedgerBroadcastFailure("Ledger relayer returned an unexpected response") from e

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()
