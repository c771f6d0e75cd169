"""
Cryptographic Primitives for SolBill Collector

Supports:
- Ed25519 - transaction signing for the collector identity
- Keypair files, inline secrets and encrypted keystores
"""

from .signer import (
    CryptoSigner,
    Ed25519Signer,
    SignatureResult,
    verify_signature,
)
from .keys import (
    EncryptedKeystore,
    IdentityError,
    load_identity,
    load_keypair_file,
    parse_secret,
    write_keypair_file,
)

__all__ = [
    "CryptoSigner",
    "Ed25519Signer",
    "SignatureResult",
    "verify_signature",
    "EncryptedKeystore",
    "IdentityError",
    "load_identity",
    "load_keypair_file",
    "parse_secret",
    "write_keypair_file",
]
