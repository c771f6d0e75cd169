"""
SolBill Collector - Enforcement Module

Subscription gate: bypass pay-per-use only for live subscriptions.
"""

from .gate import AccessResult, GateConfig, GateDecision, SubscriptionGate

__all__ = [
    "AccessResult",
    "GateConfig",
    "GateDecision",
    "SubscriptionGate",
]
