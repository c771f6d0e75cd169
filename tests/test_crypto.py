"""
Tests for the Collector Signing Identity

Ed25519 signing, keypair files, inline secrets and the encrypted keystore.
"""

import json
import os
import stat

import base58
import pytest

from solbill_collector.crypto.keys import (
    EncryptedKeystore,
    IdentityError,
    load_identity,
    load_keypair_file,
    parse_secret,
    signer_from_bytes,
    write_keypair_file,
)
from solbill_collector.crypto.signer import (
    Ed25519Signer,
    verify_signature,
)

# RFC 8032 section 7.1, test 1 (empty message)
RFC8032_SEED = "9d61b19deffd5a60ba844af492ec2cc44449c5697b326919703bac031cae7f60"
RFC8032_PUBLIC_KEY = "d75a980182b10ab7d54bfed3c964073a0ee172f3daa62325af021a68f707511a"
RFC8032_SIGNATURE = (
    "e5564300c360ac729086e2cc806e828a84877f1eb8e5d974d873e065224901555"
    "fb8821590a33bacc61e39701cf9b46bd25bf5f0595bbe24655141438e7a100b"
)


class TestEd25519Signer:
    """Test Ed25519 signature implementation."""

    def test_generate_key_pair(self):
        """Should generate a valid key pair."""
        signer = Ed25519Signer()

        assert signer.key_id is not None
        assert len(signer.key_id) == 16
        assert len(signer.get_public_key()) == 32

    def test_address_is_base58_public_key(self):
        """The ledger address is the base58 public key."""
        signer = Ed25519Signer()
        assert base58.b58decode(signer.address) == signer.get_public_key()

    def test_sign_and_verify(self):
        """Signature should verify correctly."""
        signer = Ed25519Signer()
        data = b"test message to sign"

        result = signer.sign(data)

        assert len(result.signature_bytes) == 64
        assert base58.b58decode(result.signature_b58) == result.signature_bytes
        assert signer.verify(data, result.signature).valid is True
        assert verify_signature(signer.get_public_key(), data, result.signature) is True

    def test_wrong_data_fails_verification(self):
        """Wrong data should fail verification."""
        signer = Ed25519Signer()
        result = signer.sign(b"original message")

        assert signer.verify(b"different message", result.signature).valid is False
        assert verify_signature(signer.get_public_key(), b"different message", result.signature) is False

    def test_restore_from_private_key(self):
        """Should restore signer from private key bytes."""
        original = Ed25519Signer()
        restored = Ed25519Signer(original.get_private_key())

        assert restored.address == original.address
        assert restored.key_id == original.key_id

    def test_keypair_bytes_layout(self):
        """Keypair bytes are secret seed followed by public key."""
        signer = Ed25519Signer()
        keypair = signer.to_keypair_bytes()

        assert len(keypair) == 64
        assert keypair[:32] == signer.get_private_key()
        assert keypair[32:] == signer.get_public_key()

    def test_known_vector(self):
        """A fixed seed signs the empty message to its published signature."""
        signer = Ed25519Signer(bytes.fromhex(RFC8032_SEED))
        result = signer.sign(b"")

        assert signer.get_public_key().hex() == RFC8032_PUBLIC_KEY
        assert result.signature_bytes.hex() == RFC8032_SIGNATURE
        assert verify_signature(bytes.fromhex(RFC8032_PUBLIC_KEY), b"", result.signature_bytes) is True

    def test_malformed_signature_does_not_verify(self):
        signer = Ed25519Signer()
        assert verify_signature(signer.get_public_key(), b"data", b"\x00" * 63) is False
        assert verify_signature(b"\x01" * 31, b"data", b"\x00" * 64) is False


class TestSecretParsing:
    """Test identity sources."""

    def test_seed_and_keypair(self):
        signer = Ed25519Signer()
        assert signer_from_bytes(signer.get_private_key()).address == signer.address
        assert signer_from_bytes(signer.to_keypair_bytes()).address == signer.address

    def test_mismatched_keypair_rejected(self):
        """A keypair whose public half does not match is refused."""
        a, b = Ed25519Signer(), Ed25519Signer()
        with pytest.raises(IdentityError):
            signer_from_bytes(a.get_private_key() + b.get_public_key())

    def test_wrong_length_rejected(self):
        with pytest.raises(IdentityError):
            signer_from_bytes(b"\x01" * 40)

    def test_json_array_secret(self):
        signer = Ed25519Signer()
        assert parse_secret(json.dumps(list(signer.to_keypair_bytes()))).address == signer.address

    def test_base58_secret(self):
        signer = Ed25519Signer()
        encoded = base58.b58encode(signer.to_keypair_bytes()).decode("ascii")
        assert parse_secret(encoded).address == signer.address

    def test_garbage_secret_rejected(self):
        with pytest.raises(IdentityError):
            parse_secret("[1, 2, 300]")
        with pytest.raises(IdentityError):
            parse_secret("   ")


class TestKeypairFiles:
    """Test keypair file round trip and permissions."""

    def test_write_and_load(self, tmp_path):
        signer = Ed25519Signer()
        path = write_keypair_file(tmp_path / "collector.json", signer)

        assert load_keypair_file(path).address == signer.address
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600

    def test_refuses_overwrite(self, tmp_path):
        path = write_keypair_file(tmp_path / "collector.json", Ed25519Signer())
        with pytest.raises(IdentityError):
            write_keypair_file(path, Ed25519Signer())

    def test_missing_file(self, tmp_path):
        with pytest.raises(IdentityError):
            load_keypair_file(tmp_path / "missing.json")

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("not json")
        with pytest.raises(IdentityError):
            load_keypair_file(path)


class TestEncryptedKeystore:
    """Test passphrase-protected storage."""

    def test_save_and_load(self, tmp_path):
        signer = Ed25519Signer()
        EncryptedKeystore(tmp_path / "ks", "correct horse").save(signer)

        assert EncryptedKeystore(tmp_path / "ks", "correct horse").load().address == signer.address

    def test_wrong_passphrase(self, tmp_path):
        EncryptedKeystore(tmp_path / "ks", "correct horse").save(Ed25519Signer())
        with pytest.raises(IdentityError):
            EncryptedKeystore(tmp_path / "ks", "battery staple").load()

    def test_empty_passphrase_rejected(self, tmp_path):
        with pytest.raises(IdentityError):
            EncryptedKeystore(tmp_path / "ks", "")


class TestLoadIdentity:
    """Test identity source precedence."""

    def test_inline_secret_wins(self, tmp_path):
        file_signer, inline_signer = Ed25519Signer(), Ed25519Signer()
        path = write_keypair_file(tmp_path / "k.json", file_signer)
        secret = json.dumps(list(inline_signer.to_keypair_bytes()))

        loaded = load_identity(keypair_path=str(path), secret=secret)
        assert loaded.address == inline_signer.address

    def test_keypair_file(self, tmp_path):
        signer = Ed25519Signer()
        path = write_keypair_file(tmp_path / "k.json", signer)
        assert load_identity(keypair_path=str(path)).address == signer.address

    def test_nothing_configured(self):
        with pytest.raises(IdentityError):
            load_identity()
