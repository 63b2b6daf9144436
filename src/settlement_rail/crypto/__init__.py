"""
SETTLEMENT RAIL - Cryptography Module

Ed25519 signatures over ledger facts.
"""

from .signer import FactSigner, VerificationResult, ALGORITHM

__all__ = [
    "FactSigner",
    "VerificationResult",
    "ALGORITHM",
]
