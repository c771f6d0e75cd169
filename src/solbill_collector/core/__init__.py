"""
SolBill Collector - Core Module

Addressing scheme, billing records and their byte layouts.
"""

from .addresses import AddressDeriver, DerivedAddress, AddressDerivationError
from .codec import (
    DecodeError,
    DecodeFailure,
    decode_account,
    decode_many,
    decode_plan,
    decode_service,
    decode_subscription,
    SUBSCRIPTION_ACCOUNT_SIZE,
)
from .state import (
    PlanAccount,
    PlanKind,
    ServiceAccount,
    SubscriptionAccount,
    SubscriptionStatus,
)

__all__ = [
    "AddressDeriver",
    "DerivedAddress",
    "AddressDerivationError",
    "DecodeError",
    "DecodeFailure",
    "decode_account",
    "decode_many",
    "decode_plan",
    "decode_service",
    "decode_subscription",
    "SUBSCRIPTION_ACCOUNT_SIZE",
    "PlanAccount",
    "PlanKind",
    "ServiceAccount",
    "SubscriptionAccount",
    "SubscriptionStatus",
]
