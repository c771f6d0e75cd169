"""
SolBill Collector - Ledger Module

Ledger access contract, JSON-RPC implementation and transaction encoding.
"""

from .client import (
    Confirmation,
    ConfirmationTimeout,
    LedgerClient,
    LedgerError,
    RecentAnchor,
    RejectionReason,
    SubmissionRejected,
    TransientLedgerError,
    classify_transaction_error,
)
from .rpc import JsonRpcLedgerClient
from .transaction import (
    TransactionFormatError,
    account_meta,
    build_message,
    build_signed_transaction,
    instruction_discriminator,
)

__all__ = [
    "Confirmation",
    "ConfirmationTimeout",
    "LedgerClient",
    "LedgerError",
    "RecentAnchor",
    "RejectionReason",
    "SubmissionRejected",
    "TransientLedgerError",
    "classify_transaction_error",
    "JsonRpcLedgerClient",
    "TransactionFormatError",
    "account_meta",
    "build_message",
    "build_signed_transaction",
    "instruction_discriminator",
]
