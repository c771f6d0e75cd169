"""
Settlement Builder

Turns a due subscription into a single collect_payment instruction. When the
ledger program accepts it, the program atomically:

1. transfers amount - crank_reward from the subscriber to the treasury
2. transfers crank_reward to the collector's reward account
3. advances next_billing_timestamp by exactly one interval
4. increments cycles_billed
5. marks the subscription COMPLETED once max_billing_cycles is reached

The collector never applies or verifies these steps itself. It only submits
the composed instruction and interprets accept/reject.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import structlog
from solders.instruction import Instruction

from ..core.addresses import AddressDeriver, to_pubkey
from ..core.codec import decode_optional, decode_plan, decode_service, decode_subscription
from ..core.state import PlanAccount, ServiceAccount, SubscriptionAccount
from ..crypto.signer import CryptoSigner
from ..ledger.client import LedgerClient, RecentAnchor
from ..ledger.transaction import (
    account_meta,
    build_signed_transaction,
    instruction_discriminator,
)

logger = structlog.get_logger()

COLLECT_PAYMENT = "collect_payment"
COLLECT_PAYMENT_DISCRIMINATOR = instruction_discriminator(COLLECT_PAYMENT)


class SettlementBuildError(Exception):
    """The settlement could not be composed."""

    def __init__(self, subscription: str, message: str):
        self.subscription = subscription
        super().__init__(f"{subscription}: {message}")


class SubscriptionVanished(SettlementBuildError):
    """The subscription or its service was closed after the scan."""
    pass


class SubscriptionNotDue(SettlementBuildError):
    """A fresh read shows the subscription is no longer due."""
    pass


@dataclass(frozen=True)
class SettlementOp:
    """
    A composed settlement ready to be signed and submitted.

    `projected` is the expected post-state; it is informational only.
    """
    subscription: SubscriptionAccount
    service: ServiceAccount
    plan: Optional[PlanAccount]
    reward_account: str
    instruction: Instruction
    projected: SubscriptionAccount

    @property
    def reward(self) -> int:
        return self.subscription.crank_reward

    def sign(self, signer: CryptoSigner, anchor: RecentAnchor) -> Tuple[bytes, str]:
        """Returns (wire_bytes, signature_base58)."""
        return build_signed_transaction(signer, [self.instruction], anchor.blockhash)


class SettlementBuilder:
    """
    Builds collect_payment operations for a single collector identity.

    Usage:
        builder = SettlementBuilder(ledger, deriver, signer.address)
        op = await builder.build(subscription, now)
    """

    def __init__(self, ledger: LedgerClient, deriver: AddressDeriver, collector: str):
        self.ledger = ledger
        self.deriver = deriver
        self.collector = collector

    def reward_account(self, mint: str) -> str:
        """The collector's associated token account for `mint`."""
        return self.deriver.associated_token_address(self.collector, mint).base58

    def compose(self, subscription: SubscriptionAccount, service: ServiceAccount) -> Instruction:
        """Build the instruction from already-resolved records."""
        accounts = [
            account_meta(self.collector, is_signer=True, is_writable=True),
            account_meta(service.address),
            account_meta(subscription.address, is_writable=True),
            account_meta(subscription.subscriber_token_account, is_writable=True),
            account_meta(service.treasury, is_writable=True),
            account_meta(self.reward_account(service.accepted_mint), is_writable=True),
            account_meta(service.accepted_mint),
            account_meta(self.deriver.token_program_id),
        ]
        return Instruction(
            to_pubkey(self.deriver.program_id),
            COLLECT_PAYMENT_DISCRIMINATOR,
            accounts,
        )

    async def build(self, subscription: SubscriptionAccount, now: int) -> SettlementOp:
        """
        Resolve the service and plan, re-read the subscription and compose.

        Raises SubscriptionVanished, SubscriptionNotDue or
        SettlementBuildError; ledger errors propagate.
        """
        address = subscription.address
        sub_raw, service_raw, plan_raw = await self.ledger.get_multiple_accounts(
            [address, subscription.service, subscription.plan]
        )

        fresh = decode_optional(address, sub_raw, decode_subscription)
        if fresh is None:
            raise SubscriptionVanished(address, "subscription account no longer exists")
        if not fresh.is_due(now):
            raise SubscriptionNotDue(
                address,
                f"status={fresh.status.name} next_billing={fresh.next_billing_timestamp}",
            )

        service = decode_optional(fresh.service, service_raw, decode_service)
        if service is None:
            raise SubscriptionVanished(address, f"service {fresh.service} no longer exists")

        plan = decode_optional(fresh.plan, plan_raw, decode_plan)
        if plan is None:
            logger.debug("settlement_plan_missing", subscription=address, plan=fresh.plan)

        return SettlementOp(
            subscription=fresh,
            service=service,
            plan=plan,
            reward_account=self.reward_account(service.accepted_mint),
            instruction=self.compose(fresh, service),
            projected=fresh.after_settlement(now),
        )
