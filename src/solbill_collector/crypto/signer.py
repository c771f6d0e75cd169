"""
Cryptographic Signing Implementation

The collector's signing identity. Ledger transactions are authorized by
Ed25519 signatures; the signer's public key is also its ledger address.
"""

import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Union

from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature

SIGNATURE_LENGTH = 64
PUBLIC_KEY_LENGTH = 32


@dataclass
class SignatureResult:
    """Result of a signing operation."""
    signature: Signature
    key_id: str

    @property
    def signature_bytes(self) -> bytes:
        return bytes(self.signature)

    @property
    def signature_b58(self) -> str:
        """Base58 form, which is how the ledger identifies a transaction."""
        return str(self.signature)


@dataclass
class VerificationResult:
    """Result of a verification operation."""
    valid: bool
    key_id: str
    error: Optional[str] = None


class CryptoSigner(ABC):
    """Abstract base class for cryptographic signers."""

    @property
    @abstractmethod
    def key_id(self) -> str:
        """Get the key ID (hash of public key)."""
        pass

    @property
    @abstractmethod
    def address(self) -> str:
        """Ledger address (base58 public key)."""
        pass

    @abstractmethod
    def sign(self, data: bytes) -> SignatureResult:
        """Sign data and return the signature."""
        pass

    @abstractmethod
    def verify(self, data: bytes, signature: Union[bytes, Signature]) -> VerificationResult:
        """Verify a signature."""
        pass

    @abstractmethod
    def get_public_key(self) -> bytes:
        """Get the public key bytes."""
        pass

    @abstractmethod
    def get_private_key(self) -> bytes:
        """Get the private key bytes (for secure storage)."""
        pass


class Ed25519Signer(CryptoSigner):
    """Ed25519 signer backed by a ledger keypair."""

    def __init__(self, private_key_bytes: Optional[bytes] = None):
        if private_key_bytes:
            self._keypair = Keypair.from_seed(bytes(private_key_bytes))
        else:
            self._keypair = Keypair()

        self._pubkey = self._keypair.pubkey()
        self._public_bytes = bytes(self._pubkey)
        self._key_id = hashlib.sha256(self._public_bytes).hexdigest()[:16]
        self._address = str(self._pubkey)

    @property
    def key_id(self) -> str:
        return self._key_id

    @property
    def address(self) -> str:
        return self._address

    @property
    def pubkey(self) -> Pubkey:
        return self._pubkey

    def sign(self, data: bytes) -> SignatureResult:
        return SignatureResult(
            signature=self._keypair.sign_message(data),
            key_id=self._key_id,
        )

    def verify(self, data: bytes, signature: Union[bytes, Signature]) -> VerificationResult:
        valid = verify_signature(self._public_bytes, data, signature)
        return VerificationResult(
            valid=valid,
            key_id=self._key_id,
            error=None if valid else "invalid signature",
        )

    def get_public_key(self) -> bytes:
        return self._public_bytes

    def get_private_key(self) -> bytes:
        return self._keypair.secret()

    def to_keypair_bytes(self) -> bytes:
        """64-byte keypair: 32-byte secret seed followed by the public key."""
        return bytes(self._keypair)


def verify_signature(
    public_key: Union[bytes, Pubkey],
    data: bytes,
    signature: Union[bytes, Signature],
) -> bool:
    """Verify an Ed25519 signature against a public key."""
    if not isinstance(signature, Signature):
        signature = bytes(signature)
        if len(signature) != SIGNATURE_LENGTH:
            return False
        signature = Signature(signature)
    if not isinstance(public_key, Pubkey):
        public_key = bytes(public_key)
        if len(public_key) != PUBLIC_KEY_LENGTH:
            return False
        public_key = Pubkey(public_key)
    return signature.verify(public_key, data)
