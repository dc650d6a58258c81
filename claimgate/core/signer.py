"""
Payment Authorization Signatures

Ed25519 over the canonical form of a payment authorization (amount,
currency, destination, nonce, validity window). A payer's address is its
base64 public key, so a proof carries everything needed to check it.
"""

from typing import Tuple

from nacl.encoding import Base64Encoder
from nacl.exceptions import CryptoError
from nacl.signing import SigningKey, VerifyKey

from .hasher import Hasher


def _text(raw: bytes) -> str:
    return raw.decode("ascii")


class Signer:
    """Ed25519 helpers; all keys and signatures travel as base64 text."""

    @staticmethod
    def generate_keypair() -> Tuple[str, str]:
        """Returns (private_key_b64, public_key_b64)."""
        key = SigningKey.generate()
        return _text(key.encode(Base64Encoder)), _text(key.verify_key.encode(Base64Encoder))

    @staticmethod
    def public_key_for(private_key_b64: str) -> str:
        key = SigningKey(private_key_b64, encoder=Base64Encoder)
        return _text(key.verify_key.encode(Base64Encoder))

    @staticmethod
    def sign(message: str, private_key_b64: str) -> str:
        key = SigningKey(private_key_b64, encoder=Base64Encoder)
        return _text(key.sign(message.encode("utf-8"), encoder=Base64Encoder).signature)

    @staticmethod
    def verify(message: str, signature_b64: str, public_key_b64: str) -> bool:
        """False for a bad signature and for keys or signatures that do not decode."""
        try:
            key = VerifyKey(public_key_b64, encoder=Base64Encoder)
            key.verify(message.encode("utf-8"), Base64Encoder.decode(signature_b64))
        except (CryptoError, ValueError, TypeError):
            return False
        return True

    @staticmethod
    def sign_authorization(authorization: dict, private_key_b64: str) -> str:
        return Signer.sign(Hasher.canonicalize(authorization), private_key_b64)

    @staticmethod
    def verify_authorization(authorization: dict, signature_b64: str, public_key_b64: str) -> bool:
        return Signer.verify(Hasher.canonicalize(authorization), signature_b64, public_key_b64)
