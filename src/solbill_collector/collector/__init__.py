"""
SolBill Collector - Collector Module

Scanner, settlement builder and the tick loop that drives them.
"""

from .config import CollectorConfig, ConfigError
from .scanner import ScanResult, Scanner
from .scheduler import Collector, CollectorState, system_clock
from .settlement import (
    COLLECT_PAYMENT_DISCRIMINATOR,
    SettlementBuildError,
    SettlementBuilder,
    SettlementOp,
    SubscriptionNotDue,
    SubscriptionVanished,
)
from .stats import CollectorMetrics, SettlementOutcome, SettlementReport, TickReport

__all__ = [
    "CollectorConfig",
    "ConfigError",
    "ScanResult",
    "Scanner",
    "Collector",
    "CollectorState",
    "system_clock",
    "COLLECT_PAYMENT_DISCRIMINATOR",
    "SettlementBuildError",
    "SettlementBuilder",
    "SettlementOp",
    "SubscriptionNotDue",
    "SubscriptionVanished",
    "CollectorMetrics",
    "SettlementOutcome",
    "SettlementReport",
    "TickReport",
]
