"""
Deterministic Address Derivation

Every billing entity lives at an address computed from stable seeds, so any
party can locate a merchant's service, a plan, or a subscriber's subscription
without an index. Derivation is the ledger's program-derived address rule
(highest bump whose hash lands off the Ed25519 curve), computed by solders.

Seed layouts:
- service      <- "service"      + authority
- plan         <- "plan"         + service + u16le(plan_index)
- subscription <- "subscription" + subscriber + plan

The subscription seed order is subscriber-then-plan everywhere. Callers must
never build subscription seeds themselves; use AddressDeriver.
"""

import struct
from dataclasses import dataclass
from functools import lru_cache
from typing import Sequence, Tuple, Union

import base58
from solders.pubkey import Pubkey

MAX_SEEDS = 16  # including the bump
MAX_SEED_LENGTH = 32
ADDRESS_LENGTH = 32

SERVICE_SEED = b"service"
PLAN_SEED = b"plan"
SUBSCRIPTION_SEED = b"subscription"

DEFAULT_PROGRAM_ID = "AK2xA7SHMKPqvQEirLUNf4gRQjzpQZT3q6v3d62kLyzx"
TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
ASSOCIATED_TOKEN_PROGRAM_ID = "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"

KeyLike = Union[str, bytes, Pubkey]


class AddressDerivationError(ValueError):
    """Raised when a key or seed list is malformed."""
    pass


def to_pubkey(key: KeyLike) -> Pubkey:
    """Normalize a base58 string, raw bytes or Pubkey into a Pubkey."""
    if isinstance(key, Pubkey):
        return key
    if isinstance(key, str):
        try:
            raw = base58.b58decode(key)
        except ValueError as e:
            raise AddressDerivationError(f"Invalid base58 address {key!r}: {e}") from e
    else:
        raw = bytes(key)

    if len(raw) != ADDRESS_LENGTH:
        raise AddressDerivationError(
            f"Address must be {ADDRESS_LENGTH} bytes, got {len(raw)}"
        )
    return Pubkey(raw)


def to_bytes(key: KeyLike) -> bytes:
    return bytes(to_pubkey(key))


def to_base58(key: KeyLike) -> str:
    """Render a key as its base58 string form."""
    if isinstance(key, str):
        return key
    return str(to_pubkey(key))


@dataclass(frozen=True)
class DerivedAddress:
    """An address plus the nonce (bump) that pushed it off the curve."""
    pubkey: Pubkey
    bump: int

    @property
    def base58(self) -> str:
        return str(self.pubkey)

    def __str__(self) -> str:
        return self.base58


@lru_cache(maxsize=4096)
def _find_program_address(seeds: Tuple[bytes, ...], program_id: bytes) -> DerivedAddress:
    pubkey, bump = Pubkey.find_program_address(list(seeds), Pubkey(program_id))
    return DerivedAddress(pubkey=pubkey, bump=bump)


def find_program_address(seeds: Sequence[bytes], program_id: KeyLike) -> DerivedAddress:
    """Derive the canonical program address (highest viable bump) for seeds."""
    seeds = tuple(bytes(s) for s in seeds)
    if len(seeds) >= MAX_SEEDS:
        raise AddressDerivationError(f"At most {MAX_SEEDS - 1} seeds allowed")
    for seed in seeds:
        if len(seed) > MAX_SEED_LENGTH:
            raise AddressDerivationError(
                f"Seed exceeds {MAX_SEED_LENGTH} bytes: {len(seed)}"
            )
    return _find_program_address(seeds, to_bytes(program_id))


class AddressDeriver:
    """
    Computes entity addresses for one billing program.

    Pure and side-effect free; results are memoized process-wide.

    Usage:
        deriver = AddressDeriver(program_id)
        service = deriver.service_address(merchant)
        plan = deriver.plan_address(service.base58, 0)
        sub = deriver.subscription_address(subscriber, plan.base58)
    """

    def __init__(
        self,
        program_id: KeyLike = DEFAULT_PROGRAM_ID,
        token_program_id: KeyLike = TOKEN_PROGRAM_ID,
        associated_token_program_id: KeyLike = ASSOCIATED_TOKEN_PROGRAM_ID,
    ):
        self.program_id = to_base58(program_id)
        self.token_program_id = to_base58(token_program_id)
        self.associated_token_program_id = to_base58(associated_token_program_id)

        # Validate eagerly so misconfiguration fails at startup
        to_bytes(self.program_id)
        to_bytes(self.token_program_id)
        to_bytes(self.associated_token_program_id)

    def service_address(self, authority: KeyLike) -> DerivedAddress:
        return find_program_address([SERVICE_SEED, to_bytes(authority)], self.program_id)

    def plan_address(self, service: KeyLike, plan_index: int) -> DerivedAddress:
        if not 0 <= plan_index <= 0xFFFF:
            raise AddressDerivationError(f"plan_index out of u16 range: {plan_index}")
        return find_program_address(
            [PLAN_SEED, to_bytes(service), struct.pack("<H", plan_index)],
            self.program_id,
        )

    def subscription_address(self, subscriber: KeyLike, plan: KeyLike) -> DerivedAddress:
        return find_program_address(
            [SUBSCRIPTION_SEED, to_bytes(subscriber), to_bytes(plan)],
            self.program_id,
        )

    def associated_token_address(self, wallet: KeyLike, mint: KeyLike) -> DerivedAddress:
        """Token account owned by `wallet` for `mint` (e.g. the collector's reward account)."""
        return find_program_address(
            [to_bytes(wallet), to_bytes(self.token_program_id), to_bytes(mint)],
            self.associated_token_program_id,
        )
