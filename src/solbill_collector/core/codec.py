"""
Account Codec

Fixed-layout encoding of billing records as stored on the ledger.

Layout rules:
- 8-byte discriminator = SHA256("account:<TypeName>")[:8]
- Integers little-endian, booleans one byte, keys 32 raw bytes
- Plan names are 32 bytes, UTF-8, zero padded

Decode failures raise DecodeError for the offending record only;
decode_many() collects them so a batch is never aborted by one bad account.
"""

import hashlib
import struct
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple, Union

import structlog

from .addresses import to_base58, to_bytes
from .state import PlanAccount, ServiceAccount, SubscriptionAccount, SubscriptionStatus

logger = structlog.get_logger()


def account_discriminator(type_name: str) -> bytes:
    """First 8 bytes of SHA256("account:<TypeName>")."""
    return hashlib.sha256(f"account:{type_name}".encode("utf-8")).digest()[:8]


SERVICE_DISCRIMINATOR = account_discriminator("ServiceAccount")
PLAN_DISCRIMINATOR = account_discriminator("PlanAccount")
SUBSCRIPTION_DISCRIMINATOR = account_discriminator("SubscriptionAccount")

# discriminator, authority, treasury, accepted_mint, plan_count, subscriber_count, created_at, bump
_SERVICE_LAYOUT = struct.Struct("<8s32s32s32sHIqB")
# discriminator, service, name, amount, crank_reward, interval, is_active,
# grace_period, plan_index, max_billing_cycles, bump
_PLAN_LAYOUT = struct.Struct("<8s32s32sQQq?qHQB")
# discriminator, subscriber, service, plan, subscriber_token_account, amount,
# crank_reward, interval, next_billing, last_payment, created_at, status,
# cycles_billed, max_billing_cycles, bump
_SUBSCRIPTION_LAYOUT = struct.Struct("<8s32s32s32s32sQQqqqqBIQB")

SERVICE_ACCOUNT_SIZE = _SERVICE_LAYOUT.size  # 119
PLAN_ACCOUNT_SIZE = _PLAN_LAYOUT.size  # 116
SUBSCRIPTION_ACCOUNT_SIZE = _SUBSCRIPTION_LAYOUT.size  # 198

PLAN_NAME_LENGTH = 32

BillingRecord = Union[ServiceAccount, PlanAccount, SubscriptionAccount]


class DecodeError(ValueError):
    """Raised when account bytes do not form a valid record."""

    def __init__(self, address: str, message: str):
        self.address = address
        super().__init__(f"{address}: {message}")


@dataclass
class DecodeFailure:
    """A record that could not be decoded during a batch."""
    address: str
    error: str


def _check(address: str, data: bytes, layout: struct.Struct, discriminator: bytes, kind: str) -> tuple:
    if len(data) != layout.size:
        raise DecodeError(address, f"{kind} must be {layout.size} bytes, got {len(data)}")
    fields = layout.unpack(data)
    if fields[0] != discriminator:
        raise DecodeError(address, f"not a {kind} (discriminator mismatch)")
    return fields


def decode_service(address: str, data: bytes) -> ServiceAccount:
    (_, authority, treasury, mint, plan_count,
     subscriber_count, created_at, bump) = _check(
        address, data, _SERVICE_LAYOUT, SERVICE_DISCRIMINATOR, "ServiceAccount"
    )
    return ServiceAccount(
        address=address,
        authority=to_base58(authority),
        treasury=to_base58(treasury),
        accepted_mint=to_base58(mint),
        plan_count=plan_count,
        subscriber_count=subscriber_count,
        created_at=created_at,
        bump=bump,
    )


def decode_plan(address: str, data: bytes) -> PlanAccount:
    (_, service, name_raw, amount, crank_reward, interval, is_active,
     grace_period, plan_index, max_cycles, bump) = _check(
        address, data, _PLAN_LAYOUT, PLAN_DISCRIMINATOR, "PlanAccount"
    )
    try:
        name = name_raw.rstrip(b"\x00").decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecodeError(address, f"plan name is not UTF-8: {e}") from e

    return PlanAccount(
        address=address,
        service=to_base58(service),
        name=name,
        amount=amount,
        crank_reward=crank_reward,
        interval=interval,
        is_active=is_active,
        grace_period=grace_period,
        plan_index=plan_index,
        max_billing_cycles=max_cycles,
        bump=bump,
    )


def decode_subscription(address: str, data: bytes) -> SubscriptionAccount:
    (_, subscriber, service, plan, token_account, amount, crank_reward,
     interval, next_billing, last_payment, created_at, status_byte,
     cycles_billed, max_cycles, bump) = _check(
        address, data, _SUBSCRIPTION_LAYOUT, SUBSCRIPTION_DISCRIMINATOR, "SubscriptionAccount"
    )
    try:
        status = SubscriptionStatus(status_byte)
    except ValueError as e:
        raise DecodeError(address, f"unknown subscription status {status_byte}") from e

    return SubscriptionAccount(
        address=address,
        subscriber=to_base58(subscriber),
        service=to_base58(service),
        plan=to_base58(plan),
        subscriber_token_account=to_base58(token_account),
        amount=amount,
        crank_reward=crank_reward,
        interval=interval,
        next_billing_timestamp=next_billing,
        status=status,
        cycles_billed=cycles_billed,
        max_billing_cycles=max_cycles,
        last_payment_timestamp=last_payment,
        created_at=created_at,
        bump=bump,
    )


def decode_account(address: str, data: bytes) -> BillingRecord:
    """Decode any billing record by its discriminator."""
    prefix = bytes(data[:8])
    if prefix == SUBSCRIPTION_DISCRIMINATOR:
        return decode_subscription(address, data)
    if prefix == PLAN_DISCRIMINATOR:
        return decode_plan(address, data)
    if prefix == SERVICE_DISCRIMINATOR:
        return decode_service(address, data)
    raise DecodeError(address, "unknown account discriminator")


def decode_many(
    accounts: Iterable[Tuple[str, Optional[bytes]]],
) -> Tuple[List[SubscriptionAccount], List[DecodeFailure]]:
    """
    Decode a batch of subscription accounts independently.

    Returns (decoded, failures); a malformed record never aborts the batch.
    """
    decoded: List[SubscriptionAccount] = []
    failures: List[DecodeFailure] = []

    for address, data in accounts:
        try:
            if data is None:
                raise DecodeError(address, "account payload could not be read")
            decoded.append(decode_subscription(address, data))
        except DecodeError as e:
            logger.warning("subscription_decode_failed", address=address, error=str(e))
            failures.append(DecodeFailure(address=address, error=str(e)))

    return decoded, failures


def decode_optional(address: str, data: Optional[bytes], decoder) -> Optional[BillingRecord]:
    """Apply decoder unless the account is absent."""
    if data is None:
        return None
    return decoder(address, data)


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------

def encode_service(service: ServiceAccount) -> bytes:
    return _SERVICE_LAYOUT.pack(
        SERVICE_DISCRIMINATOR,
        to_bytes(service.authority),
        to_bytes(service.treasury),
        to_bytes(service.accepted_mint),
        service.plan_count,
        service.subscriber_count,
        service.created_at,
        service.bump,
    )


def encode_plan(plan: PlanAccount) -> bytes:
    plan.validate()
    return _PLAN_LAYOUT.pack(
        PLAN_DISCRIMINATOR,
        to_bytes(plan.service),
        plan.name.encode("utf-8").ljust(PLAN_NAME_LENGTH, b"\x00"),
        plan.amount,
        plan.crank_reward,
        plan.interval,
        plan.is_active,
        plan.grace_period,
        plan.plan_index,
        plan.max_billing_cycles,
        plan.bump,
    )


def encode_subscription(subscription: SubscriptionAccount) -> bytes:
    return _SUBSCRIPTION_LAYOUT.pack(
        SUBSCRIPTION_DISCRIMINATOR,
        to_bytes(subscription.subscriber),
        to_bytes(subscription.service),
        to_bytes(subscription.plan),
        to_bytes(subscription.subscriber_token_account),
        subscription.amount,
        subscription.crank_reward,
        subscription.interval,
        subscription.next_billing_timestamp,
        subscription.last_payment_timestamp,
        subscription.created_at,
        subscription.status.value,
        subscription.cycles_billed,
        subscription.max_billing_cycles,
        subscription.bump,
    )
