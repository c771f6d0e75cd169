"""
Tests for the Account Codec

Fixed layouts, discriminators and per-record decode failures.
"""

import hashlib
import os
import struct

import pytest

from solbill_collector.core.addresses import to_base58
from solbill_collector.core.codec import (
    PLAN_ACCOUNT_SIZE,
    SERVICE_ACCOUNT_SIZE,
    SUBSCRIPTION_ACCOUNT_SIZE,
    SUBSCRIPTION_DISCRIMINATOR,
    DecodeError,
    decode_account,
    decode_many,
    decode_plan,
    decode_service,
    decode_subscription,
    encode_plan,
    encode_service,
    encode_subscription,
)
from solbill_collector.core.state import (
    PlanAccount,
    ServiceAccount,
    SubscriptionAccount,
    SubscriptionStatus,
)


def key() -> str:
    return to_base58(os.urandom(32))


def sample_subscription(address=None, **overrides) -> SubscriptionAccount:
    fields = dict(
        address=address or key(),
        subscriber=key(),
        service=key(),
        plan=key(),
        subscriber_token_account=key(),
        amount=10_000_000,
        crank_reward=10_000,
        interval=2_592_000,
        next_billing_timestamp=1_702_592_000,
        status=SubscriptionStatus.ACTIVE,
        cycles_billed=2,
        max_billing_cycles=12,
        last_payment_timestamp=1_700_000_000,
        created_at=1_694_000_000,
        bump=254,
    )
    fields.update(overrides)
    return SubscriptionAccount(**fields)


class TestLayouts:
    """Test on-ledger record sizes and discriminators."""

    def test_account_sizes(self):
        assert SERVICE_ACCOUNT_SIZE == 119
        assert PLAN_ACCOUNT_SIZE == 116
        assert SUBSCRIPTION_ACCOUNT_SIZE == 198

    def test_discriminator_is_hash_prefix(self):
        expected = hashlib.sha256(b"account:SubscriptionAccount").digest()[:8]
        assert SUBSCRIPTION_DISCRIMINATOR == expected

    def test_subscription_field_offsets(self):
        """Amount follows the four keys; status follows the four timestamps."""
        sub = sample_subscription()
        data = encode_subscription(sub)

        assert data[:8] == SUBSCRIPTION_DISCRIMINATOR
        assert struct.unpack_from("<Q", data, 8 + 4 * 32)[0] == sub.amount
        assert struct.unpack_from("<q", data, 8 + 4 * 32 + 16 + 8)[0] == sub.next_billing_timestamp
        assert data[8 + 4 * 32 + 16 + 32] == SubscriptionStatus.ACTIVE.value


class TestDecoding:
    """Test decoding of each record type."""

    def test_subscription(self):
        sub = sample_subscription()
        assert decode_subscription(sub.address, encode_subscription(sub)) == sub

    def test_service(self):
        service = ServiceAccount(
            address=key(), authority=key(), treasury=key(), accepted_mint=key(),
            plan_count=3, subscriber_count=40, created_at=1_690_000_000, bump=253,
        )
        assert decode_service(service.address, encode_service(service)) == service

    def test_plan_name_padding_stripped(self):
        plan = PlanAccount(
            address=key(), service=key(), name="Pro Monthly", amount=5,
            crank_reward=1, interval=60, is_active=False, grace_period=30,
            plan_index=7, max_billing_cycles=0, bump=250,
        )
        decoded = decode_plan(plan.address, encode_plan(plan))

        assert decoded.name == "Pro Monthly"
        assert decoded.is_active is False
        assert decoded == plan

    def test_expired_status_decodes(self):
        sub = sample_subscription(status=SubscriptionStatus.EXPIRED)
        assert decode_subscription(sub.address, encode_subscription(sub)).status == SubscriptionStatus.EXPIRED

    def test_decode_account_dispatches(self):
        sub = sample_subscription()
        assert isinstance(decode_account(sub.address, encode_subscription(sub)), SubscriptionAccount)


class TestDecodeErrors:
    """Test malformed records."""

    def test_wrong_length(self):
        data = encode_subscription(sample_subscription())
        with pytest.raises(DecodeError) as exc:
            decode_subscription("addr", data[:-1])
        assert exc.value.address == "addr"

    def test_wrong_discriminator(self):
        data = b"\x00" * 8 + encode_subscription(sample_subscription())[8:]
        with pytest.raises(DecodeError):
            decode_subscription("addr", data)

    def test_unknown_status_byte(self):
        data = bytearray(encode_subscription(sample_subscription()))
        data[8 + 4 * 32 + 16 + 32] = 9
        with pytest.raises(DecodeError):
            decode_subscription("addr", bytes(data))

    def test_non_utf8_plan_name(self):
        plan = PlanAccount(
            address=key(), service=key(), name="ok", amount=5, crank_reward=1,
            interval=60, is_active=True, grace_period=0, plan_index=0,
        )
        data = bytearray(encode_plan(plan))
        data[8 + 32] = 0xFF
        with pytest.raises(DecodeError):
            decode_plan(plan.address, bytes(data))

    def test_unknown_discriminator(self):
        with pytest.raises(DecodeError):
            decode_account("addr", b"\x01" * SUBSCRIPTION_ACCOUNT_SIZE)


class TestDecodeMany:
    """A malformed record never aborts the batch."""

    def test_failures_isolated(self):
        good_a = sample_subscription()
        good_b = sample_subscription()
        accounts = [
            (good_a.address, encode_subscription(good_a)),
            ("broken", b"\x07" * SUBSCRIPTION_ACCOUNT_SIZE),
            (good_b.address, encode_subscription(good_b)),
        ]

        decoded, failures = decode_many(accounts)

        assert [s.address for s in decoded] == [good_a.address, good_b.address]
        assert len(failures) == 1
        assert failures[0].address == "broken"
