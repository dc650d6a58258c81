"""
Payment Facilitator Clients

The facilitator is a black box that answers one question: does this proof
pay for this price? It owns settlement; the registry only asks for a verdict.

- PaymentFacilitatorClient: the boundary every implementation satisfies
- X402FacilitatorClient: remote facilitator over HTTP (POST {url}/verify)
- MockFacilitatorClient: local Ed25519 verification for development and tests

A denial is a verdict (verified=False). An unreachable facilitator is an
exception (PaymentFacilitatorUnavailable), because the caller may retry
with the same proof.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Callable, Iterable, Optional

import httpx

from ..core.errors import PaymentFacilitatorUnavailable
from ..core.hasher import Hasher
from ..core.signer import Signer
from ..observability import get_logger, redact
from ..schemas import X402_VERSION, PaymentProof, PaymentVerdict, PriceSpec

logger = get_logger(__name__)


class PaymentFacilitatorClient(ABC):
    """Verifies payment proofs against a price."""

    @abstractmethod
    async def verify(self, proof: PaymentProof, price: PriceSpec) -> PaymentVerdict:
        """
        Ask the facilitator whether `proof` pays for `price`.

        Raises:
            PaymentFacilitatorUnavailable: the facilitator could not answer
        """
        pass

    async def aclose(self) -> None:
        """Release any held resources."""
        return None


class X402FacilitatorClient(PaymentFacilitatorClient):
    """
    Remote x402 facilitator.

    Request:
        POST {base_url}/verify
        {"x402Version": 1, "paymentPayload": {...}, "paymentRequirements": {...}}

    Response:
        {"isValid": bool, "invalidReason": str?, "payer": str?, "paymentId": str?}
    """

    def __init__(
        self,
        base_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(timeout=timeout)

    async def verify(self, proof: PaymentProof, price: PriceSpec) -> PaymentVerdict:
        body = {
            "x402Version": X402_VERSION,
            "paymentPayload": proof.to_dict(),
            "paymentRequirements": price.to_dict(),
        }

        try:
            response = await self.client.post(f"{self.base_url}/verify", json=body)
        except httpx.HTTPError as e:
            raise PaymentFacilitatorUnavailable(
                f"Facilitator unreachable: {type(e).__name__}"
            ) from e

        if response.status_code >= 500:
            raise PaymentFacilitatorUnavailable(
                f"Facilitator returned HTTP {response.status_code}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise PaymentFacilitatorUnavailable(
                "Facilitator returned a non-JSON response"
            ) from e

        payment_id = data.get("paymentId") or Hasher.payment_id(proof)

        if response.status_code >= 400 or not data.get("isValid", False):
            return PaymentVerdict(
                verified=False,
                payment_id=payment_id,
                reason=data.get("invalidReason") or f"HTTP {response.status_code}",
                payer=data.get("payer"),
            )

        return PaymentVerdict(
            verified=True,
            payment_id=payment_id,
            payer=data.get("payer") or proof.payer_address,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()


class MockFacilitatorClient(PaymentFacilitatorClient):
    """
    Local facilitator for development and tests.

    A proof verifies when:
    - currency and network match the price
    - amount covers maxAmountRequired
    - payTo (if present) is the price's destination
    - validBefore (if present) is in the future
    - the payer is not on the deny list
    - signatureOrReceipt is the payer's Ed25519 signature over the
      canonical authorization (payerAddress is the base64 public key)

    `available = False` simulates an outage; `delay` simulates latency.
    """

    def __init__(
        self,
        denied_payers: Iterable[str] = (),
        verify_signatures: bool = True,
        delay: float = 0.0,
        clock: Callable[[], float] = time.time,
    ):
        self.denied_payers = set(denied_payers)
        self.verify_signatures = verify_signatures
        self.delay = delay
        self.available = True
        self.calls = 0
        self._clock = clock

    def deny(self, payer_address: str) -> None:
        self.denied_payers.add(payer_address)

    def _check(self, proof: PaymentProof, price: PriceSpec) -> Optional[str]:
        if proof.currency != price.currency:
            return f"currency {proof.currency} not accepted, expected {price.currency}"
        if proof.amount < price.max_amount_required:
            return f"amount {proof.amount} below required {price.max_amount_required}"
        if proof.pay_to is not None and proof.pay_to != price.pay_to:
            return "payment destination does not match"
        if proof.network is not None and proof.network != price.network:
            return f"network {proof.network} not accepted, expected {price.network}"
        if not proof.is_fresh(self._clock()):
            return "authorization expired"
        if proof.payer_address in self.denied_payers:
            return "payer denied"
        if self.verify_signatures and not Signer.verify_authorization(
            proof.authorization(), proof.signature_or_receipt, proof.payer_address
        ):
            return "invalid signature"
        return None

    async def verify(self, proof: PaymentProof, price: PriceSpec) -> PaymentVerdict:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)

        if not self.available:
            raise PaymentFacilitatorUnavailable("Mock facilitator is offline")

        payment_id = Hasher.payment_id(proof)
        reason = self._check(proof, price)

        if reason is not None:
            logger.info(
                "Mock facilitator denied payment",
                payer=redact(proof.payer_address),
                reason=reason,
            )
            return PaymentVerdict(
                verified=False,
                payment_id=payment_id,
                reason=reason,
                payer=proof.payer_address,
            )

        return PaymentVerdict(
            verified=True,
            payment_id=payment_id,
            payer=proof.payer_address,
        )
