"""
Key Management for the Collector Identity

The collector signs every settlement with one Ed25519 identity. Sources:
- Keypair file: JSON array of 64 bytes (secret seed || public key)
- Inline secret: base58 string or JSON array (64-byte keypair or 32-byte seed)
- Encrypted keystore: Fernet-encrypted keypair, key derived from a passphrase

Any failure to load is fatal: the collector must not start scheduling
without a usable identity.
"""

import base64
import json
import os
from pathlib import Path
from typing import List, Optional, Union

import base58
import structlog
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .signer import Ed25519Signer

logger = structlog.get_logger()

KEYPAIR_LENGTH = 64
SEED_LENGTH = 32


class IdentityError(Exception):
    """Raised when the signing identity cannot be loaded."""
    pass


def signer_from_bytes(raw: bytes) -> Ed25519Signer:
    """
    Build a signer from a 64-byte keypair or a 32-byte seed.

    For keypairs, the embedded public key must match the seed.
    """
    if len(raw) == SEED_LENGTH:
        return Ed25519Signer(raw)

    if len(raw) != KEYPAIR_LENGTH:
        raise IdentityError(
            f"Key material must be {SEED_LENGTH} or {KEYPAIR_LENGTH} bytes, got {len(raw)}"
        )

    signer = Ed25519Signer(raw[:SEED_LENGTH])
    if signer.get_public_key() != raw[SEED_LENGTH:]:
        raise IdentityError("Keypair public key does not match its secret key")
    return signer


def _from_int_list(values: List[int]) -> bytes:
    if not isinstance(values, list) or not all(isinstance(v, int) and 0 <= v <= 255 for v in values):
        raise IdentityError("Keypair JSON must be an array of byte values")
    return bytes(values)


def parse_secret(value: str) -> Ed25519Signer:
    """Parse an inline secret (JSON byte array or base58)."""
    value = value.strip()
    if not value:
        raise IdentityError("Empty signing secret")

    if value.startswith("["):
        try:
            raw = _from_int_list(json.loads(value))
        except json.JSONDecodeError as e:
            raise IdentityError(f"Invalid keypair JSON: {e}") from e
    else:
        try:
            raw = base58.b58decode(value)
        except ValueError as e:
            raise IdentityError(f"Invalid base58 secret: {e}") from e

    return signer_from_bytes(raw)


def load_keypair_file(path: Union[str, Path]) -> Ed25519Signer:
    """Load a JSON keypair file."""
    path = Path(path).expanduser()
    try:
        contents = path.read_text(encoding="utf-8")
    except OSError as e:
        raise IdentityError(f"Cannot read keypair file {path}: {e}") from e

    try:
        raw = _from_int_list(json.loads(contents))
    except json.JSONDecodeError as e:
        raise IdentityError(f"Keypair file {path} is not valid JSON: {e}") from e

    signer = signer_from_bytes(raw)
    logger.info("identity_loaded", source="keypair_file", address=signer.address)
    return signer


def write_keypair_file(path: Union[str, Path], signer: Ed25519Signer, overwrite: bool = False) -> Path:
    """Write a signer as a JSON keypair file readable only by its owner."""
    path = Path(path).expanduser()
    if path.exists() and not overwrite:
        raise IdentityError(f"Refusing to overwrite existing keypair file {path}")

    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        json.dump(list(signer.to_keypair_bytes()), f)

    logger.info("keypair_written", path=str(path), address=signer.address)
    return path


class EncryptedKeystore:
    """
    Passphrase-protected storage for the collector identity.

    The Fernet key is derived from the passphrase with PBKDF2-SHA256.
    """

    SALT = b"solbill-collector-v1"  # Static salt, passphrase provides entropy
    ITERATIONS = 100000

    def __init__(self, path: Union[str, Path], passphrase: str):
        if not passphrase:
            raise IdentityError("Keystore passphrase is required")
        self.path = Path(path).expanduser()
        self._fernet = Fernet(self._derive_key(passphrase.encode("utf-8")))

    def _derive_key(self, secret: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=self.SALT,
            iterations=self.ITERATIONS,
        )
        return base64.urlsafe_b64encode(kdf.derive(secret))

    def save(self, signer: Ed25519Signer) -> None:
        payload = json.dumps({
            "address": signer.address,
            "keypair": base64.b64encode(signer.to_keypair_bytes()).decode("ascii"),
        }).encode("utf-8")

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(self._fernet.encrypt(payload))

        logger.info("keystore_saved", path=str(self.path), address=signer.address)

    def load(self) -> Ed25519Signer:
        try:
            token = self.path.read_bytes()
        except OSError as e:
            raise IdentityError(f"Cannot read keystore {self.path}: {e}") from e

        try:
            data = json.loads(self._fernet.decrypt(token).decode("utf-8"))
        except InvalidToken as e:
            raise IdentityError("Keystore passphrase is wrong or keystore is corrupt") from e

        signer = signer_from_bytes(base64.b64decode(data["keypair"]))
        logger.info("identity_loaded", source="keystore", address=signer.address)
        return signer


def load_identity(
    keypair_path: Optional[str] = None,
    secret: Optional[str] = None,
    keystore_path: Optional[str] = None,
    keystore_passphrase: Optional[str] = None,
) -> Ed25519Signer:
    """
    Resolve the collector identity from the first configured source.

    Precedence: inline secret, encrypted keystore, keypair file.
    """
    if secret:
        signer = parse_secret(secret)
        logger.info("identity_loaded", source="inline_secret", address=signer.address)
        return signer

    if keystore_path:
        return EncryptedKeystore(keystore_path, keystore_passphrase or "").load()

    if keypair_path:
        return load_keypair_file(keypair_path)

    raise IdentityError("No signing identity configured")
