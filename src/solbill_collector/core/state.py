"""
Billing Entity State

Typed views of the three ledger records a collector works with:

- ServiceAccount:      one per merchant authority (treasury + accepted mint)
- PlanAccount:         one per (service, plan_index)
- SubscriptionAccount: one per (subscriber, plan)

Subscription lifecycle:
    ACTIVE --settle--> ACTIVE (next_billing += interval, cycles_billed += 1)
    ACTIVE --settle--> COMPLETED (cycle limit reached)
    ACTIVE --missed--> PAST_DUE --grace elapsed--> EXPIRED
    any    --subscriber cancels--> CANCELLED (account closed)

Every transition is applied by the ledger program. The collector only
predicts the post-settlement state for logging; it never enforces it.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional


class SubscriptionStatus(Enum):
    """Subscription status; values are the on-ledger status byte."""
    ACTIVE = 0
    PAST_DUE = 1
    CANCELLED = 2
    EXPIRED = 3
    COMPLETED = 4

    @property
    def is_terminal(self) -> bool:
        return self in (
            SubscriptionStatus.CANCELLED,
            SubscriptionStatus.EXPIRED,
            SubscriptionStatus.COMPLETED,
        )


class PlanKind(Enum):
    """Billing shape derived from max_billing_cycles."""
    RECURRING = "RECURRING"  # 0 = unlimited
    ONE_TIME = "ONE_TIME"  # 1
    INSTALLMENT = "INSTALLMENT"  # N > 1


class PlanValidationError(ValueError):
    """Raised when plan terms violate the plan invariants."""
    pass


@dataclass(frozen=True)
class ServiceAccount:
    """A merchant's billing service."""
    address: str
    authority: str
    treasury: str
    accepted_mint: str
    plan_count: int
    subscriber_count: int = 0
    created_at: int = 0
    bump: int = 0


@dataclass(frozen=True)
class PlanAccount:
    """A plan published under a service."""
    address: str
    service: str
    name: str
    amount: int
    crank_reward: int
    interval: int
    is_active: bool
    grace_period: int
    plan_index: int
    max_billing_cycles: int = 0
    bump: int = 0

    @property
    def kind(self) -> PlanKind:
        if self.max_billing_cycles == 0:
            return PlanKind.RECURRING
        if self.max_billing_cycles == 1:
            return PlanKind.ONE_TIME
        return PlanKind.INSTALLMENT

    def validate(self) -> None:
        """Check plan invariants. Raises PlanValidationError."""
        if not self.name or len(self.name.encode("utf-8")) > 32:
            raise PlanValidationError("Plan name must be non-empty and at most 32 bytes")
        if self.amount <= 0:
            raise PlanValidationError("Plan amount must be greater than zero")
        if self.interval <= 0 and self.max_billing_cycles != 1:
            raise PlanValidationError("Plan interval must be greater than zero")
        if self.crank_reward < 0 or self.crank_reward >= self.amount:
            raise PlanValidationError("Crank reward must be less than the plan amount")
        if self.grace_period < 0:
            raise PlanValidationError("Grace period cannot be negative")
        if self.max_billing_cycles < 0:
            raise PlanValidationError("max_billing_cycles cannot be negative")


@dataclass(frozen=True)
class SubscriptionAccount:
    """
    A subscriber's authorization to be charged under a plan.

    amount, crank_reward, interval and max_billing_cycles are snapshots of
    the plan taken at subscribe time.
    """
    address: str
    subscriber: str
    service: str
    plan: str
    subscriber_token_account: str
    amount: int
    crank_reward: int
    interval: int
    next_billing_timestamp: int
    status: SubscriptionStatus
    cycles_billed: int = 0
    max_billing_cycles: int = 0
    last_payment_timestamp: int = 0
    created_at: int = 0
    bump: int = 0

    def is_due(self, now: int) -> bool:
        """The settlement predicate: ACTIVE and next_billing_timestamp <= now."""
        return (
            self.status == SubscriptionStatus.ACTIVE
            and self.next_billing_timestamp <= now
        )

    def within_grace(self, now: int, grace_period: int) -> bool:
        """Whether `now` is no later than due date + grace period."""
        return now <= self.next_billing_timestamp + grace_period

    @property
    def remaining_cycles(self) -> Optional[int]:
        """Cycles left before completion, or None for unlimited plans."""
        if self.max_billing_cycles == 0:
            return None
        return max(self.max_billing_cycles - self.cycles_billed, 0)

    def after_settlement(self, now: Optional[int] = None) -> "SubscriptionAccount":
        """
        Projected state after one accepted settlement.

        next_billing advances by exactly one interval, cycles_billed by one,
        and the status becomes COMPLETED once the cycle limit is reached.
        """
        cycles = self.cycles_billed + 1
        completed = self.max_billing_cycles != 0 and cycles >= self.max_billing_cycles
        return replace(
            self,
            next_billing_timestamp=self.next_billing_timestamp + self.interval,
            cycles_billed=cycles,
            last_payment_timestamp=now if now is not None else self.last_payment_timestamp,
            status=SubscriptionStatus.COMPLETED if completed else SubscriptionStatus.ACTIVE,
        )
