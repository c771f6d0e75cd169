"""
Due Subscription Scanner

Lists every subscription-shaped account owned by the billing program,
decodes each independently and keeps the ones due for settlement.
The scan is recomputed from ledger state on every tick; there is no cursor.
"""

from dataclasses import dataclass, field
from typing import List

import structlog

from ..core.codec import SUBSCRIPTION_ACCOUNT_SIZE, DecodeFailure, decode_many
from ..core.state import SubscriptionAccount, SubscriptionStatus
from ..ledger.client import LedgerClient

logger = structlog.get_logger()


@dataclass
class ScanResult:
    """Outcome of one scan."""
    now: int
    scanned: int = 0
    due: List[SubscriptionAccount] = field(default_factory=list)
    past_due: List[SubscriptionAccount] = field(default_factory=list)
    failures: List[DecodeFailure] = field(default_factory=list)


class Scanner:
    """
    Finds subscriptions with status ACTIVE and next_billing_timestamp <= now.

    Ledger errors propagate to the caller; decode errors are per record.
    """

    def __init__(self, ledger: LedgerClient, program_id: str):
        self.ledger = ledger
        self.program_id = program_id

    async def scan(self, now: int) -> ScanResult:
        accounts = await self.ledger.get_program_accounts(
            self.program_id, SUBSCRIPTION_ACCOUNT_SIZE
        )
        decoded, failures = decode_many(accounts)

        result = ScanResult(now=now, scanned=len(accounts), failures=failures)
        for sub in decoded:
            if sub.is_due(now):
                result.due.append(sub)
            elif sub.status == SubscriptionStatus.PAST_DUE:
                # Degradation is applied by the program; only observed here
                result.past_due.append(sub)

        # Oldest obligations first
        result.due.sort(key=lambda s: (s.next_billing_timestamp, s.address))

        logger.debug(
            "scan_completed",
            now=now,
            scanned=result.scanned,
            due=len(result.due),
            past_due=len(result.past_due),
            decode_failures=len(failures),
        )
        return result

    async def find_due_subscriptions(self, now: int) -> List[SubscriptionAccount]:
        return (await self.scan(now)).due
