"""
Settlement Outcomes and Collector Metrics

Every settlement attempt ends in exactly one SettlementOutcome. Outcomes are
grouped for the per-tick summary:

- settled: the ledger accepted the settlement
- skipped: benign or unknown (stale race, vanished account, unconfirmed, abandoned)
- failed:  the ledger or the collector refused or errored
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from threading import Lock
from typing import Any, Dict, List, Optional


class SettlementOutcome(Enum):
    SETTLED = "SETTLED"
    STALE = "STALE"  # another collector won the race
    VANISHED = "VANISHED"  # account closed between scan and settle
    UNCONFIRMED = "UNCONFIRMED"  # confirmation timed out; re-observed next tick
    ABANDONED = "ABANDONED"  # shutdown before dispatch
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    REJECTED = "REJECTED"
    FAILED = "FAILED"

    @property
    def is_skip(self) -> bool:
        return self in (
            SettlementOutcome.STALE,
            SettlementOutcome.VANISHED,
            SettlementOutcome.UNCONFIRMED,
            SettlementOutcome.ABANDONED,
        )

    @property
    def is_failure(self) -> bool:
        return self in (
            SettlementOutcome.INSUFFICIENT_FUNDS,
            SettlementOutcome.REJECTED,
            SettlementOutcome.FAILED,
        )


@dataclass
class SettlementReport:
    """Result of one settlement attempt."""
    subscription: str
    outcome: SettlementOutcome
    signature: Optional[str] = None
    reward: int = 0
    error: Optional[str] = None
    latency_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subscription": self.subscription,
            "outcome": self.outcome.value,
            "signature": self.signature,
            "reward": self.reward,
            "error": self.error,
            "latency_ms": self.latency_ms,
        }


@dataclass
class TickReport:
    """Summary of one collector cycle."""
    tick: int
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    now: int = 0
    scanned: int = 0
    decode_failures: int = 0
    past_due_observed: int = 0
    reports: List[SettlementReport] = field(default_factory=list)
    aborted: Optional[str] = None

    @property
    def found(self) -> int:
        return len(self.reports)

    @property
    def settled(self) -> int:
        return sum(1 for r in self.reports if r.outcome == SettlementOutcome.SETTLED)

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.reports if r.outcome.is_skip)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.reports if r.outcome.is_failure)

    @property
    def reward_earned(self) -> int:
        return sum(r.reward for r in self.reports if r.outcome == SettlementOutcome.SETTLED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tick": self.tick,
            "started_at": self.started_at,
            "now": self.now,
            "scanned": self.scanned,
            "found": self.found,
            "settled": self.settled,
            "skipped": self.skipped,
            "failed": self.failed,
            "decode_failures": self.decode_failures,
            "past_due_observed": self.past_due_observed,
            "reward_earned": self.reward_earned,
            "aborted": self.aborted,
            "reports": [r.to_dict() for r in self.reports],
        }


class CollectorMetrics:
    """
    Cumulative collector counters.

    Written by the collector loop, read by the HTTP surface.
    """

    def __init__(self):
        self._lock = Lock()
        self._ticks = 0
        self._aborted_ticks = 0
        self._decode_failures = 0
        self._outcomes: Dict[str, int] = {o.value: 0 for o in SettlementOutcome}
        self._reward_earned = 0
        self._last_tick: Optional[Dict[str, Any]] = None

    def record_tick(self, report: TickReport) -> None:
        with self._lock:
            self._ticks += 1
            if report.aborted:
                self._aborted_ticks += 1
            self._decode_failures += report.decode_failures
            for r in report.reports:
                self._outcomes[r.outcome.value] += 1
            self._reward_earned += report.reward_earned
            summary = report.to_dict()
            summary.pop("reports")
            self._last_tick = summary

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "ticks": self._ticks,
                "aborted_ticks": self._aborted_ticks,
                "decode_failures": self._decode_failures,
                "outcomes": dict(self._outcomes),
                "reward_earned": self._reward_earned,
                "last_tick": dict(self._last_tick) if self._last_tick else None,
            }
