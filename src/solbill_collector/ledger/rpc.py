"""
JSON-RPC Ledger Client

LedgerClient implementation over the ledger node's JSON-RPC HTTP API,
using a shared httpx.AsyncClient so concurrent settlement tasks reuse
connections.
"""

import asyncio
import base64
import binascii
import itertools
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx
import structlog

from ..core.codec import DecodeError
from .client import (
    Confirmation,
    ConfirmationTimeout,
    LedgerClient,
    RecentAnchor,
    SubmissionRejected,
    TransientLedgerError,
    classify_transaction_error,
)

logger = structlog.get_logger()

# getMultipleAccounts accepts at most 100 keys per call
MULTIPLE_ACCOUNTS_BATCH = 100

COMMITMENT_RANK = {"processed": 0, "confirmed": 1, "finalized": 2}

# JSON-RPC error code for a failed preflight simulation
PREFLIGHT_FAILURE = -32002


@contextmanager
def _unexpected_payload(method: str):
    """Report a response of the wrong shape as a transient ledger failure."""
    try:
        yield
    except (KeyError, AttributeError, TypeError, IndexError) as e:
        raise TransientLedgerError(f"{method} returned an unexpected payload: {e!r}") from e


class JsonRpcLedgerClient(LedgerClient):
    """
    Ledger access over JSON-RPC.

    Usage:
        client = JsonRpcLedgerClient("http://127.0.0.1:8899")
        data = await client.get_account(address)
        await client.close()
    """

    def __init__(
        self,
        endpoint: str,
        commitment: str = "confirmed",
        timeout: float = 10.0,
        poll_interval: float = 0.5,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        if commitment not in COMMITMENT_RANK:
            raise ValueError(f"Unknown commitment: {commitment}")

        self.endpoint = endpoint
        self.commitment = commitment
        self.poll_interval = poll_interval
        self._http = http_client or httpx.AsyncClient(
            timeout=timeout,
            headers={"Content-Type": "application/json"},
        )
        self._ids = itertools.count(1)

    async def _rpc(self, method: str, params: List[Any]) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }

        try:
            response = await self._http.post(self.endpoint, json=payload)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as e:
            raise TransientLedgerError(f"{method} failed: {e}") from e
        except ValueError as e:
            raise TransientLedgerError(f"{method} returned invalid JSON: {e}") from e

        with _unexpected_payload(method):
            error = body.get("error")
            if error:
                self._raise_rpc_error(method, error)
            return body.get("result")

    def _raise_rpc_error(self, method: str, error: Dict[str, Any]) -> None:
        code = error.get("code")
        message = error.get("message", "")
        data = error.get("data") or {}

        if method == "sendTransaction" and code == PREFLIGHT_FAILURE and isinstance(data, dict):
            reason, program_code = classify_transaction_error(data.get("err"))
            raise SubmissionRejected(reason, message, code=program_code)

        raise TransientLedgerError(f"{method} RPC error {code}: {message}")

    @staticmethod
    def _decode_data(address: str, account: Optional[Dict[str, Any]]) -> Optional[bytes]:
        if account is None:
            return None
        data = account.get("data") if isinstance(account, dict) else None
        if not (isinstance(data, list) and data and isinstance(data[0], str)):
            raise DecodeError(address, f"unexpected account data encoding: {data!r}")
        try:
            return base64.b64decode(data[0], validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecodeError(address, f"invalid base64 account data: {e}") from e

    async def get_account(self, address: str) -> Optional[bytes]:
        result = await self._rpc(
            "getAccountInfo",
            [address, {"encoding": "base64", "commitment": self.commitment}],
        )
        with _unexpected_payload("getAccountInfo"):
            value = result["value"]
        return self._decode_data(address, value)

    async def get_multiple_accounts(self, addresses: Sequence[str]) -> List[Optional[bytes]]:
        out: List[Optional[bytes]] = []
        for start in range(0, len(addresses), MULTIPLE_ACCOUNTS_BATCH):
            chunk = list(addresses[start:start + MULTIPLE_ACCOUNTS_BATCH])
            result = await self._rpc(
                "getMultipleAccounts",
                [chunk, {"encoding": "base64", "commitment": self.commitment}],
            )
            with _unexpected_payload("getMultipleAccounts"):
                values = list(result["value"])
            if len(values) != len(chunk):
                raise TransientLedgerError(
                    f"getMultipleAccounts returned {len(values)} entries for {len(chunk)} keys"
                )
            out.extend(self._decode_data(a, v) for a, v in zip(chunk, values))
        return out

    async def get_program_accounts(
        self, program_id: str, data_size: int,
    ) -> List[Tuple[str, Optional[bytes]]]:
        """
        Entries whose payload cannot be read are returned with None data so
        the caller can record them as decode failures.
        """
        result = await self._rpc(
            "getProgramAccounts",
            [
                program_id,
                {
                    "encoding": "base64",
                    "commitment": self.commitment,
                    "filters": [{"dataSize": data_size}],
                },
            ],
        )
        if result is None:
            return []
        if not isinstance(result, list):
            raise TransientLedgerError(f"getProgramAccounts returned {type(result).__name__}")

        accounts: List[Tuple[str, Optional[bytes]]] = []
        for item in result:
            if not isinstance(item, dict) or not isinstance(item.get("pubkey"), str):
                logger.warning("account_entry_invalid", program_id=program_id, entry=repr(item)[:120])
                continue
            address = item["pubkey"]
            try:
                data = self._decode_data(address, item.get("account"))
            except DecodeError as e:
                logger.warning("account_payload_invalid", address=address, error=str(e))
                data = None
            accounts.append((address, data))
        return accounts

    async def get_recent_anchor(self) -> RecentAnchor:
        result = await self._rpc("getLatestBlockhash", [{"commitment": self.commitment}])
        with _unexpected_payload("getLatestBlockhash"):
            value = result["value"]
            return RecentAnchor(
                blockhash=value["blockhash"],
                last_valid_block_height=value.get("lastValidBlockHeight", 0),
            )

    async def submit(self, transaction: bytes) -> str:
        encoded = base64.b64encode(transaction).decode("ascii")
        return await self._rpc(
            "sendTransaction",
            [encoded, {"encoding": "base64", "preflightCommitment": self.commitment}],
        )

    async def confirm(self, signature: str, timeout: float) -> Confirmation:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        wanted = COMMITMENT_RANK[self.commitment]

        while True:
            try:
                result = await self._rpc("getSignatureStatuses", [[signature]])
                with _unexpected_payload("getSignatureStatuses"):
                    statuses = result["value"]
                    status = statuses[0] if statuses else None
                    failure = status.get("err") if status is not None else None
                    level = (status.get("confirmationStatus") or "processed") if status is not None else None
            except TransientLedgerError as e:
                # Status polling is best-effort until the deadline
                logger.debug("confirmation_poll_failed", signature=signature, error=str(e))
                status = None

            if status is not None:
                if failure is not None:
                    reason, code = classify_transaction_error(failure)
                    raise SubmissionRejected(
                        reason,
                        f"Transaction {signature} failed: {failure}",
                        code=code,
                        signature=signature,
                    )
                if COMMITMENT_RANK.get(level, 0) >= wanted:
                    return Confirmation(
                        signature=signature,
                        slot=status.get("slot"),
                        commitment=level,
                    )

            if loop.time() >= deadline:
                raise ConfirmationTimeout(signature, timeout)
            await asyncio.sleep(min(self.poll_interval, max(deadline - loop.time(), 0)))

    async def close(self) -> None:
        await self._http.aclose()
