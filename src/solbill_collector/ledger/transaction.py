"""
Transaction Assembly

Settlements are legacy ledger transactions with a single instruction,
paid for and signed by the collector. Message compilation and the wire
format come from solders; the signature is produced by the collector's
CryptoSigner over the serialized message.
"""

import hashlib
from typing import Sequence, Tuple

import base58
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.message import Message
from solders.transaction import Transaction

from ..core.addresses import KeyLike, to_pubkey
from ..crypto.signer import CryptoSigner

BLOCKHASH_LENGTH = 32


class TransactionFormatError(ValueError):
    """Raised when a transaction cannot be assembled."""
    pass


def instruction_discriminator(name: str) -> bytes:
    """First 8 bytes of SHA256("global:<instruction_name>")."""
    return hashlib.sha256(f"global:{name}".encode("utf-8")).digest()[:8]


def account_meta(address: KeyLike, is_signer: bool = False, is_writable: bool = False) -> AccountMeta:
    return AccountMeta(to_pubkey(address), is_signer=is_signer, is_writable=is_writable)


def to_blockhash(value: str) -> Hash:
    try:
        raw = base58.b58decode(value)
    except ValueError as e:
        raise TransactionFormatError(f"Invalid blockhash {value!r}: {e}") from e
    if len(raw) != BLOCKHASH_LENGTH:
        raise TransactionFormatError(f"Blockhash must be {BLOCKHASH_LENGTH} bytes, got {len(raw)}")
    return Hash(raw)


def build_message(
    payer: KeyLike,
    instructions: Sequence[Instruction],
    recent_blockhash: str,
) -> Message:
    """Compile instructions into a signable message with `payer` as fee payer."""
    return Message.new_with_blockhash(
        list(instructions),
        to_pubkey(payer),
        to_blockhash(recent_blockhash),
    )


def build_signed_transaction(
    signer: CryptoSigner,
    instructions: Sequence[Instruction],
    recent_blockhash: str,
) -> Tuple[bytes, str]:
    """
    Compile and sign a transaction paid for by `signer`.

    Returns (wire_bytes, signature_base58).
    """
    message = build_message(signer.address, instructions, recent_blockhash)
    result = signer.sign(bytes(message))
    transaction = Transaction.populate(message, [result.signature])
    return bytes(transaction), result.signature_b58
