"""
Subscription Gate

Answers whether a caller may skip pay-per-use because it holds a live
subscription to a plan. The gate derives the subscription address from
(subscriber, plan), reads it from the ledger and decides:

- SUBSCRIBED:  status ACTIVE
- GRACE:       status PAST_DUE and now <= next_billing_timestamp + grace_period
- PAY_PER_USE: anything else, including absent accounts and read failures

The gate never writes to the ledger.
"""

import time
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Any, Callable, Dict, Optional

import structlog

from ..core.addresses import AddressDerivationError, AddressDeriver
from ..core.codec import DecodeError, decode_optional, decode_plan, decode_subscription
from ..core.state import PlanAccount, SubscriptionStatus
from ..ledger.client import LedgerClient, LedgerError

logger = structlog.get_logger()


class GateDecision(Enum):
    """Gate decision outcomes."""
    SUBSCRIBED = "SUBSCRIBED"
    GRACE = "GRACE"
    PAY_PER_USE = "PAY_PER_USE"


@dataclass
class AccessResult:
    """Result of a gate check."""
    decision: GateDecision
    subscription_address: Optional[str] = None
    status: Optional[SubscriptionStatus] = None
    reason: Optional[str] = None
    latency_ms: float = 0.0

    @property
    def allowed(self) -> bool:
        return self.decision != GateDecision.PAY_PER_USE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decision": self.decision.value,
            "allowed": self.allowed,
            "subscription": self.subscription_address,
            "status": self.status.name if self.status else None,
            "reason": self.reason,
        }


@dataclass
class GateConfig:
    """Configuration for the subscription gate."""
    fail_closed: bool = True  # Fall back to PAY_PER_USE on read errors
    cache_plans: bool = True


class SubscriptionGate:
    """
    Subscription-based access gate.

    Plan records change rarely, so they are cached until refresh().
    Subscription records are always read fresh.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        deriver: Optional[AddressDeriver] = None,
        config: Optional[GateConfig] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.ledger = ledger
        self.deriver = deriver or AddressDeriver()
        self.config = config or GateConfig()
        self.clock = clock or (lambda: int(time.time()))

        self._lock = Lock()
        self._plans: Dict[str, PlanAccount] = {}

        # Metrics
        self._total_checks = 0
        self._decisions: Dict[str, int] = {d.value: 0 for d in GateDecision}
        self._errors = 0

    def _load_plan(self, plan: str, raw: Optional[bytes]) -> Optional[PlanAccount]:
        account = decode_optional(plan, raw, decode_plan)
        if account is not None and self.config.cache_plans:
            with self._lock:
                self._plans[plan] = account
        return account

    def _cached_plan(self, plan: str) -> Optional[PlanAccount]:
        if not self.config.cache_plans:
            return None
        with self._lock:
            return self._plans.get(plan)

    async def check(self, subscriber: str, plan: str, now: Optional[int] = None) -> AccessResult:
        """Decide access for (subscriber, plan)."""
        start_time = time.perf_counter()
        now = self.clock() if now is None else now

        try:
            address = self.deriver.subscription_address(subscriber, plan).base58

            cached = self._cached_plan(plan)
            if cached is None:
                sub_raw, plan_raw = await self.ledger.get_multiple_accounts([address, plan])
                plan_account = self._load_plan(plan, plan_raw)
            else:
                sub_raw = await self.ledger.get_account(address)
                plan_account = cached

            subscription = decode_optional(address, sub_raw, decode_subscription)
            result = self._decide(address, subscription, plan_account, now)

        except (AddressDerivationError, DecodeError, LedgerError) as e:
            with self._lock:
                self._errors += 1
            logger.warning("gate_check_failed", subscriber=subscriber, plan=plan, error=str(e))
            if not self.config.fail_closed:
                raise
            result = AccessResult(
                decision=GateDecision.PAY_PER_USE,
                reason=f"Subscription lookup failed: {e}",
            )

        result.latency_ms = (time.perf_counter() - start_time) * 1000
        self._record(result)

        logger.info(
            "gate_decision",
            subscriber=subscriber,
            plan=plan,
            decision=result.decision.value,
            status=result.status.name if result.status else None,
        )
        return result

    @staticmethod
    def _decide(address, subscription, plan_account, now) -> AccessResult:
        if subscription is None:
            return AccessResult(
                decision=GateDecision.PAY_PER_USE,
                subscription_address=address,
                reason="No subscription",
            )

        status = subscription.status
        if status == SubscriptionStatus.ACTIVE:
            return AccessResult(GateDecision.SUBSCRIBED, address, status)

        if status == SubscriptionStatus.PAST_DUE:
            if plan_account is None:
                return AccessResult(
                    GateDecision.PAY_PER_USE, address, status,
                    reason="Plan not found; grace period unknown",
                )
            if subscription.within_grace(now, plan_account.grace_period):
                return AccessResult(GateDecision.GRACE, address, status)
            return AccessResult(
                GateDecision.PAY_PER_USE, address, status,
                reason="Grace period elapsed",
            )

        return AccessResult(
            GateDecision.PAY_PER_USE, address, status,
            reason=f"Subscription {status.name.lower()}",
        )

    def _record(self, result: AccessResult) -> None:
        with self._lock:
            self._total_checks += 1
            self._decisions[result.decision.value] += 1

    async def refresh(self) -> int:
        """
        Re-read every cached plan from the ledger.

        Plans that no longer exist are dropped. Returns the number kept.
        """
        with self._lock:
            addresses = list(self._plans)

        fresh: Dict[str, PlanAccount] = {}
        if addresses:
            raws = await self.ledger.get_multiple_accounts(addresses)
            for address, raw in zip(addresses, raws):
                try:
                    plan = decode_optional(address, raw, decode_plan)
                except DecodeError as e:
                    logger.warning("gate_plan_decode_failed", plan=address, error=str(e))
                    continue
                if plan is not None:
                    fresh[address] = plan

        with self._lock:
            self._plans = fresh

        logger.info("gate_refreshed", plans=len(fresh), dropped=len(addresses) - len(fresh))
        return len(fresh)

    @property
    def cached_plans(self) -> Dict[str, PlanAccount]:
        with self._lock:
            return dict(self._plans)

    def get_metrics(self) -> Dict[str, Any]:
        """Get gate metrics."""
        with self._lock:
            return {
                "total_checks": self._total_checks,
                "decisions": dict(self._decisions),
                "errors": self._errors,
                "cached_plans": len(self._plans),
            }
