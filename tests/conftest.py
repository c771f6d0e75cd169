"""
Pytest Configuration and Fixtures
"""

import asyncio
import os
import sys
from typing import Dict, List, Optional, Sequence, Set, Tuple

import pytest
import structlog

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

# Set test environment
os.environ["API_KEY"] = "test-key-12345"

from solders.transaction import Transaction

from solbill_collector.collector.settlement import COLLECT_PAYMENT_DISCRIMINATOR
from solbill_collector.core.addresses import AddressDeriver, to_base58
from solbill_collector.core.codec import (
    PLAN_ACCOUNT_SIZE,
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
from solbill_collector.crypto.signer import Ed25519Signer, verify_signature
from solbill_collector.ledger.client import (
    ERROR_ACCOUNT_NOT_INITIALIZED,
    ERROR_BILLING_NOT_DUE,
    ERROR_SUBSCRIPTION_COMPLETED,
    ERROR_SUBSCRIPTION_NOT_ACTIVE,
    ERROR_TOKEN_INSUFFICIENT_FUNDS,
    Confirmation,
    ConfirmationTimeout,
    LedgerClient,
    RecentAnchor,
    RejectionReason,
    SubmissionRejected,
    TransientLedgerError,
)

@pytest.fixture(autouse=True)
def reset_structlog():
    """Undo logging configuration done by CLI tests, which binds the
    per-test captured stderr that pytest closes afterwards."""
    yield
    structlog.reset_defaults()


T0 = 1_700_000_000
MONTH = 2_592_000


def new_address() -> str:
    return to_base58(os.urandom(32))


class InMemoryLedger(LedgerClient):
    """
    Ledger double that applies collect_payment atomically.

    Mirrors the billing program's checks: a settlement for a subscription
    that is not ACTIVE or not yet due is rejected as stale, so two
    collectors racing for the same cycle cannot both succeed.
    """

    def __init__(self, deriver: AddressDeriver, now: int = T0):
        self.deriver = deriver
        self.now = now
        self.accounts: Dict[str, bytes] = {}
        self.balances: Dict[str, int] = {}
        self.blockhash = new_address()

        self.submitted: List[str] = []
        self.accepted: List[str] = []
        self.rejected: List[Tuple[str, RejectionReason]] = []
        self._sig_to_subscription: Dict[str, str] = {}

        # Failure injection
        self.scan_error: Optional[Exception] = None
        self.submit_errors: Dict[str, Exception] = {}
        self.unconfirmed: Set[str] = set()
        self.extra_accounts: List[Tuple[str, bytes]] = []
        self.closed = False

    async def get_account(self, address: str) -> Optional[bytes]:
        return self.accounts.get(address)

    async def get_multiple_accounts(self, addresses: Sequence[str]) -> List[Optional[bytes]]:
        return [self.accounts.get(a) for a in addresses]

    async def get_program_accounts(self, program_id: str, data_size: int):
        if self.scan_error is not None:
            raise self.scan_error
        found = [(a, d) for a, d in self.accounts.items() if len(d) == data_size]
        found.extend((a, d) for a, d in self.extra_accounts if len(d) == data_size)
        return found

    async def get_recent_anchor(self) -> RecentAnchor:
        return RecentAnchor(blockhash=self.blockhash, last_valid_block_height=1)

    def _reject(self, subscription: str, reason: RejectionReason, code: Optional[int] = None):
        self.rejected.append((subscription, reason))
        raise SubmissionRejected(reason, f"{reason.value} ({code})", code=code)

    async def submit(self, transaction: bytes) -> str:
        # Let other tasks interleave before the atomic apply
        await asyncio.sleep(0)

        tx = Transaction.from_bytes(transaction)
        message = tx.message
        keys = [str(k) for k in message.account_keys]
        payer = keys[0]
        if not verify_signature(message.account_keys[0], bytes(message), tx.signatures[0]):
            raise SubmissionRejected(RejectionReason.PROGRAM_ERROR, "bad signature")

        ix = message.instructions[0]
        assert keys[ix.program_id_index] == self.deriver.program_id
        assert bytes(ix.data) == COLLECT_PAYMENT_DISCRIMINATOR

        (collector, service_addr, sub_addr, sub_token,
         treasury, reward_account, mint, token_program) = [keys[i] for i in bytes(ix.accounts)]
        assert collector == payer
        assert token_program == self.deriver.token_program_id

        signature = str(tx.signatures[0])
        self.submitted.append(sub_addr)

        if sub_addr in self.submit_errors:
            raise self.submit_errors[sub_addr]

        raw = self.accounts.get(sub_addr)
        if raw is None:
            self._reject(sub_addr, RejectionReason.ACCOUNT_MISSING, ERROR_ACCOUNT_NOT_INITIALIZED)
        sub = decode_subscription(sub_addr, raw)

        if sub.status == SubscriptionStatus.COMPLETED:
            self._reject(sub_addr, RejectionReason.STALE, ERROR_SUBSCRIPTION_COMPLETED)
        if sub.status != SubscriptionStatus.ACTIVE:
            self._reject(sub_addr, RejectionReason.STALE, ERROR_SUBSCRIPTION_NOT_ACTIVE)
        if self.now < sub.next_billing_timestamp:
            self._reject(sub_addr, RejectionReason.STALE, ERROR_BILLING_NOT_DUE)

        service = decode_service(service_addr, self.accounts[service_addr])
        assert treasury == service.treasury
        assert mint == service.accepted_mint
        assert sub_token == sub.subscriber_token_account
        assert reward_account == self.deriver.associated_token_address(collector, mint).base58

        if self.balances.get(sub_token, 0) < sub.amount:
            self._reject(sub_addr, RejectionReason.INSUFFICIENT_FUNDS, ERROR_TOKEN_INSUFFICIENT_FUNDS)

        # Atomic apply
        self.balances[sub_token] -= sub.amount
        self.balances[treasury] = self.balances.get(treasury, 0) + sub.amount - sub.crank_reward
        self.balances[reward_account] = self.balances.get(reward_account, 0) + sub.crank_reward
        self.accounts[sub_addr] = encode_subscription(sub.after_settlement(self.now))

        self.accepted.append(sub_addr)
        self._sig_to_subscription[signature] = sub_addr
        return signature

    async def confirm(self, signature: str, timeout: float) -> Confirmation:
        if self._sig_to_subscription.get(signature) in self.unconfirmed:
            raise ConfirmationTimeout(signature, timeout)
        return Confirmation(signature=signature, slot=len(self.accepted), commitment="confirmed")

    async def close(self) -> None:
        self.closed = True

    # ------------------------------------------------------------------
    # Seeding helpers
    # ------------------------------------------------------------------

    def subscription(self, address: str) -> Optional[SubscriptionAccount]:
        raw = self.accounts.get(address)
        return decode_subscription(address, raw) if raw is not None else None

    def add_service(self, authority: Optional[str] = None) -> ServiceAccount:
        authority = authority or new_address()
        derived = self.deriver.service_address(authority)
        service = ServiceAccount(
            address=derived.base58,
            authority=authority,
            treasury=new_address(),
            accepted_mint=new_address(),
            plan_count=0,
            created_at=self.now,
            bump=derived.bump,
        )
        self.accounts[service.address] = encode_service(service)
        return service

    def add_plan(
        self,
        service: ServiceAccount,
        amount: int = 10_000_000,
        interval: int = MONTH,
        crank_reward: int = 10_000,
        grace_period: int = 3 * 86_400,
        max_billing_cycles: int = 0,
        plan_index: Optional[int] = None,
    ) -> PlanAccount:
        if plan_index is None:
            plan_index = sum(1 for a in self.accounts.values() if len(a) == PLAN_ACCOUNT_SIZE)
        derived = self.deriver.plan_address(service.address, plan_index)
        plan = PlanAccount(
            address=derived.base58,
            service=service.address,
            name=f"plan-{plan_index}",
            amount=amount,
            crank_reward=crank_reward,
            interval=interval,
            is_active=True,
            grace_period=grace_period,
            plan_index=plan_index,
            max_billing_cycles=max_billing_cycles,
            bump=derived.bump,
        )
        self.accounts[plan.address] = encode_plan(plan)
        return plan

    def add_subscription(
        self,
        service: ServiceAccount,
        plan: PlanAccount,
        subscriber: Optional[str] = None,
        next_billing: Optional[int] = None,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        balance: Optional[int] = None,
        cycles_billed: int = 0,
    ) -> SubscriptionAccount:
        subscriber = subscriber or new_address()
        derived = self.deriver.subscription_address(subscriber, plan.address)
        token_account = self.deriver.associated_token_address(subscriber, service.accepted_mint).base58
        sub = SubscriptionAccount(
            address=derived.base58,
            subscriber=subscriber,
            service=service.address,
            plan=plan.address,
            subscriber_token_account=token_account,
            amount=plan.amount,
            crank_reward=plan.crank_reward,
            interval=plan.interval,
            next_billing_timestamp=self.now + plan.interval if next_billing is None else next_billing,
            status=status,
            cycles_billed=cycles_billed,
            max_billing_cycles=plan.max_billing_cycles,
            created_at=self.now,
            bump=derived.bump,
        )
        self.accounts[sub.address] = encode_subscription(sub)
        self.balances[token_account] = plan.amount * 100 if balance is None else balance
        return sub


@pytest.fixture
def deriver():
    return AddressDeriver()


@pytest.fixture
def ledger(deriver):
    return InMemoryLedger(deriver)


@pytest.fixture
def collector_signer():
    return Ed25519Signer()


@pytest.fixture
def service(ledger):
    return ledger.add_service()


@pytest.fixture
def monthly_plan(ledger, service):
    return ledger.add_plan(service, amount=10_000_000, interval=MONTH, crank_reward=10_000)


@pytest.fixture
def transient_error():
    return TransientLedgerError("connection reset by peer")
