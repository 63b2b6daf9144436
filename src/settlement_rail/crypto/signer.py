"""
Ed25519 Signing for Ledger Facts

Every journal entry can carry a detached signature so that an auditor holding
only the public key can verify the replayed fact stream.
"""

import base64
import hashlib
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519
import structlog

logger = structlog.get_logger()

ALGORITHM = "Ed25519"


@dataclass
class VerificationResult:
    """Result of a verification operation."""
    valid: bool
    key_id: str
    error: Optional[str] = None


class FactSigner:
    """Ed25519 signer using the cryptography library."""

    def __init__(self, private_key_bytes: Optional[bytes] = None):
        if private_key_bytes:
            self._private_key = ed25519.Ed25519PrivateKey.from_private_bytes(private_key_bytes)
        else:
            self._private_key = ed25519.Ed25519PrivateKey.generate()

        self._public_key = self._private_key.public_key()
        self._key_id = hashlib.sha256(self.get_public_key()).hexdigest()[:16]

    @classmethod
    def from_b64(cls, private_key_b64: str) -> "FactSigner":
        return cls(base64.b64decode(private_key_b64))

    @property
    def algorithm(self) -> str:
        return ALGORITHM

    @property
    def key_id(self) -> str:
        return self._key_id

    def sign(self, data: bytes) -> str:
        """Sign data and return a Base64-encoded signature."""
        signature = self._private_key.sign(data)
        return base64.b64encode(signature).decode('utf-8')

    def verify(self, data: bytes, signature_b64: str) -> VerificationResult:
        try:
            self._public_key.verify(base64.b64decode(signature_b64), data)
            return VerificationResult(valid=True, key_id=self._key_id)
        except (InvalidSignature, ValueError) as e:
            return VerificationResult(
                valid=False,
                key_id=self._key_id,
                error=str(e) or "signature mismatch",
            )

    def get_public_key(self) -> bytes:
        return self._public_key.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )

    def get_public_key_pem(self) -> str:
        return self._public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode('utf-8')

    def get_private_key(self) -> bytes:
        """Raw private key bytes (for secure storage)."""
        return self._private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
