"""
Payer Wallets

A wallet turns a price specification into a signed payment proof.
Ed25519Wallet is the local implementation the mock facilitator verifies;
anything that satisfies the Wallet protocol can stand in for it.
"""

import secrets
import time
from typing import Callable, Optional, Protocol

from ..core.signer import Signer
from ..schemas import PaymentProof, PriceSpec


class Wallet(Protocol):
    """Signs payments on behalf of a payer."""

    @property
    def address(self) -> str:
        ...

    def sign_payment(self, price: PriceSpec) -> PaymentProof:
        ...


class Ed25519Wallet:
    """
    Ed25519 payer.

    The payer address is the base64 public key. Each proof carries a random
    nonce and is valid for the price's maxTimeoutSeconds.
    """

    def __init__(
        self,
        private_key_b64: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        if private_key_b64 is None:
            private_key_b64, _ = Signer.generate_keypair()
        self._private_key = private_key_b64
        self._address = Signer.public_key_for(private_key_b64)
        self._clock = clock

    @property
    def address(self) -> str:
        return self._address

    @property
    def private_key(self) -> str:
        return self._private_key

    def sign_payment(self, price: PriceSpec) -> PaymentProof:
        authorization = {
            "amount": price.max_amount_required,
            "currency": price.currency,
            "payer_address": self._address,
            "nonce": secrets.token_hex(16),
            "valid_before": int(self._clock()) + price.max_timeout_seconds,
            "network": price.network,
            "pay_to": price.pay_to,
        }
        signature = Signer.sign_authorization(authorization, self._private_key)
        return PaymentProof(**authorization, signature_or_receipt=signature)
