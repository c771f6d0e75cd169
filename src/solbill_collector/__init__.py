"""
SolBill Collector

Permissionless settlement worker for recurring billing on a shared ledger.

Merchants publish plans, subscribers authorize recurring charges, and any
number of independent collectors discover due subscriptions and settle them.
Correctness rests on the ledger program's atomic accept/reject of each
settlement; collectors never coordinate with one another.
"""

__version__ = "1.0.0"
