"""
Ledger Client Contract

The collector consumes the ledger through this narrow interface:
- read one or many accounts by address (absent accounts are None)
- list program accounts filtered by byte size
- fetch a recent anchor (blockhash) for transaction lifetime
- submit a signed transaction and confirm its inclusion

Error taxonomy:
- TransientLedgerError: network / RPC failure; retry on the next tick
- SubmissionRejected:   the ledger refused the transaction (reason attached)
- ConfirmationTimeout:  outcome unknown within the wait budget
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional, Sequence, Tuple


class LedgerError(Exception):
    """Base class for ledger interaction failures."""
    pass


class TransientLedgerError(LedgerError):
    """RPC timeout, connection reset or server-side failure."""
    pass


class RejectionReason(Enum):
    """Why the ledger refused a settlement."""
    STALE = "STALE"  # another collector already advanced the subscription
    ACCOUNT_MISSING = "ACCOUNT_MISSING"  # closed between scan and settle
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"  # subscriber cannot pay
    PROGRAM_ERROR = "PROGRAM_ERROR"  # anything else

    @property
    def is_benign(self) -> bool:
        return self in (RejectionReason.STALE, RejectionReason.ACCOUNT_MISSING)


class SubmissionRejected(LedgerError):
    """The ledger rejected a submitted transaction."""

    def __init__(
        self,
        reason: RejectionReason,
        message: str = "",
        code: Optional[int] = None,
        signature: Optional[str] = None,
    ):
        self.reason = reason
        self.code = code
        self.signature = signature
        super().__init__(message or reason.value)


class ConfirmationTimeout(LedgerError):
    """The transaction was not observed as confirmed in time."""

    def __init__(self, signature: str, timeout: float):
        self.signature = signature
        self.timeout = timeout
        super().__init__(f"Transaction {signature} not confirmed within {timeout}s")


# Billing program error codes (custom program errors start at 6000)
ERROR_BILLING_NOT_DUE = 6000
ERROR_SUBSCRIPTION_NOT_ACTIVE = 6001
ERROR_SUBSCRIPTION_COMPLETED = 6012
# Framework code for an account that is closed / never initialized
ERROR_ACCOUNT_NOT_INITIALIZED = 3012
# Token program: insufficient funds
ERROR_TOKEN_INSUFFICIENT_FUNDS = 1

STALE_ERROR_CODES = frozenset({
    ERROR_BILLING_NOT_DUE,
    ERROR_SUBSCRIPTION_NOT_ACTIVE,
    ERROR_SUBSCRIPTION_COMPLETED,
})


def classify_transaction_error(err: Any) -> Tuple[RejectionReason, Optional[int]]:
    """
    Map a ledger transaction error payload to a rejection reason.

    Payload shapes:
        "AccountNotFound"
        {"InstructionError": [0, {"Custom": 6000}]}
        {"InstructionError": [0, "InvalidAccountData"]}
    """
    if isinstance(err, str):
        if err in ("AccountNotFound", "ProgramAccountNotFound"):
            return RejectionReason.ACCOUNT_MISSING, None
        return RejectionReason.PROGRAM_ERROR, None

    if isinstance(err, dict) and "InstructionError" in err:
        detail = err["InstructionError"]
        inner = detail[1] if isinstance(detail, (list, tuple)) and len(detail) > 1 else None

        if isinstance(inner, dict) and "Custom" in inner:
            code = int(inner["Custom"])
            if code in STALE_ERROR_CODES:
                return RejectionReason.STALE, code
            if code == ERROR_ACCOUNT_NOT_INITIALIZED:
                return RejectionReason.ACCOUNT_MISSING, code
            if code == ERROR_TOKEN_INSUFFICIENT_FUNDS:
                return RejectionReason.INSUFFICIENT_FUNDS, code
            return RejectionReason.PROGRAM_ERROR, code

        if inner in ("UninitializedAccount", "AccountNotFound"):
            return RejectionReason.ACCOUNT_MISSING, None
        if inner == "InsufficientFunds":
            return RejectionReason.INSUFFICIENT_FUNDS, None

    return RejectionReason.PROGRAM_ERROR, None


@dataclass(frozen=True)
class RecentAnchor:
    """A recent blockhash bounding a transaction's lifetime."""
    blockhash: str
    last_valid_block_height: int = 0


@dataclass(frozen=True)
class Confirmation:
    """Observed inclusion of a transaction."""
    signature: str
    slot: Optional[int] = None
    commitment: Optional[str] = None


class LedgerClient(ABC):
    """Asynchronous ledger access used by the scanner, builder and gate."""

    @abstractmethod
    async def get_account(self, address: str) -> Optional[bytes]:
        """Raw account data, or None when the account does not exist."""
        pass

    @abstractmethod
    async def get_multiple_accounts(self, addresses: Sequence[str]) -> List[Optional[bytes]]:
        """Batched get_account; result order matches `addresses`."""
        pass

    @abstractmethod
    async def get_program_accounts(self, program_id: str, data_size: int) -> List[Tuple[str, Optional[bytes]]]:
        """
        All (address, data) owned by program_id whose data is exactly data_size bytes.

        An entry whose payload could not be read carries None data.
        """
        pass

    @abstractmethod
    async def get_recent_anchor(self) -> RecentAnchor:
        pass

    @abstractmethod
    async def submit(self, transaction: bytes) -> str:
        """Submit a signed wire transaction; returns its signature."""
        pass

    @abstractmethod
    async def confirm(self, signature: str, timeout: float) -> Confirmation:
        """
        Wait until the transaction is confirmed.

        Raises ConfirmationTimeout when the outcome is still unknown after
        `timeout` seconds, SubmissionRejected when it landed with an error.
        """
        pass

    async def close(self) -> None:
        """Release transport resources."""
        return None
