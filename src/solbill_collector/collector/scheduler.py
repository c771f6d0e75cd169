"""
Settlement Collector

The orchestrating loop:

    IDLE --wake--> SCANNING --due found--> DISPATCHING --all resolved--> IDLE
      any --stop--> STOPPED (after the in-flight tick resolves)

Each due subscription is settled in its own task under a bounded
semaphore. Failures are isolated per subscription. Correctness across
competing collectors relies only on the ledger rejecting stale settlements;
no client-side locking is used.
"""

import asyncio
import time
from enum import Enum
from typing import Callable, Optional

import structlog

from ..core.addresses import AddressDeriver
from ..core.codec import DecodeError
from ..core.state import SubscriptionAccount
from ..crypto.signer import CryptoSigner
from ..ledger.client import (
    ConfirmationTimeout,
    LedgerClient,
    RejectionReason,
    SubmissionRejected,
    TransientLedgerError,
)
from .config import CollectorConfig
from .scanner import Scanner
from .settlement import (
    SettlementBuildError,
    SettlementBuilder,
    SubscriptionNotDue,
    SubscriptionVanished,
)
from .stats import CollectorMetrics, SettlementOutcome, SettlementReport, TickReport

logger = structlog.get_logger()

Clock = Callable[[], int]


def system_clock() -> int:
    return int(time.time())


class CollectorState(Enum):
    IDLE = "IDLE"
    SCANNING = "SCANNING"
    DISPATCHING = "DISPATCHING"
    STOPPED = "STOPPED"


_REJECTION_OUTCOMES = {
    RejectionReason.STALE: SettlementOutcome.STALE,
    RejectionReason.ACCOUNT_MISSING: SettlementOutcome.VANISHED,
    RejectionReason.INSUFFICIENT_FUNDS: SettlementOutcome.INSUFFICIENT_FUNDS,
    RejectionReason.PROGRAM_ERROR: SettlementOutcome.REJECTED,
}


class Collector:
    """
    Permissionless settlement collector.

    Usage:
        collector = Collector(ledger, signer)
        report = await collector.tick()      # one cycle
        await collector.run()                # until stop()
    """

    def __init__(
        self,
        ledger: LedgerClient,
        signer: CryptoSigner,
        deriver: Optional[AddressDeriver] = None,
        poll_interval: float = 15.0,
        max_concurrency: int = 8,
        confirm_timeout: float = 30.0,
        clock: Optional[Clock] = None,
        metrics: Optional[CollectorMetrics] = None,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")

        self.ledger = ledger
        self.signer = signer
        self.deriver = deriver or AddressDeriver()
        self.poll_interval = poll_interval
        self.max_concurrency = max_concurrency
        self.confirm_timeout = confirm_timeout
        self.clock = clock or system_clock
        self.metrics = metrics or CollectorMetrics()

        self.scanner = Scanner(ledger, self.deriver.program_id)
        self.builder = SettlementBuilder(ledger, self.deriver, signer.address)

        self._state = CollectorState.IDLE
        self._ticks = 0
        self._stopping = False
        self._stop_event: Optional[asyncio.Event] = None

    @classmethod
    def from_config(
        cls,
        config: CollectorConfig,
        ledger: LedgerClient,
        signer: CryptoSigner,
        **kwargs,
    ) -> "Collector":
        deriver = AddressDeriver(
            program_id=config.program_id,
            token_program_id=config.token_program_id,
            associated_token_program_id=config.associated_token_program_id,
        )
        return cls(
            ledger,
            signer,
            deriver=deriver,
            poll_interval=config.poll_interval,
            max_concurrency=config.max_concurrency,
            confirm_timeout=config.confirm_timeout,
            **kwargs,
        )

    @property
    def state(self) -> CollectorState:
        return self._state

    @property
    def stopping(self) -> bool:
        return self._stopping

    def stop(self) -> None:
        """Stop new ticks and new dispatch. In-flight submissions resolve naturally."""
        if not self._stopping:
            logger.info("collector_stop_requested", state=self._state.value)
        self._stopping = True
        if self._stop_event is not None:
            self._stop_event.set()

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------

    async def tick(self) -> TickReport:
        """Scan once and settle every due subscription."""
        self._ticks += 1
        now = self.clock()
        report = TickReport(tick=self._ticks, now=now)

        self._state = CollectorState.SCANNING
        try:
            scan = await self.scanner.scan(now)
        except TransientLedgerError as e:
            # Retried on the next wake, never within this tick
            report.aborted = str(e)
            logger.warning("tick_aborted", tick=self._ticks, error=str(e))
            self._finish_tick(report)
            return report
        except Exception as e:
            report.aborted = f"{type(e).__name__}: {e}"
            logger.exception("tick_aborted", tick=self._ticks, error=str(e))
            self._finish_tick(report)
            return report

        report.scanned = scan.scanned
        report.decode_failures = len(scan.failures)
        report.past_due_observed = len(scan.past_due)

        if scan.due and not self._stopping:
            self._state = CollectorState.DISPATCHING
            semaphore = asyncio.Semaphore(self.max_concurrency)
            report.reports = list(await asyncio.gather(
                *(self._dispatch(semaphore, sub, now) for sub in scan.due)
            ))

        self._finish_tick(report)
        logger.info(
            "tick_completed",
            tick=report.tick,
            now=now,
            scanned=report.scanned,
            found=report.found,
            settled=report.settled,
            skipped=report.skipped,
            failed=report.failed,
            past_due_observed=report.past_due_observed,
            decode_failures=report.decode_failures,
            reward_earned=report.reward_earned,
        )
        return report

    def _finish_tick(self, report: TickReport) -> None:
        self.metrics.record_tick(report)
        self._state = CollectorState.STOPPED if self._stopping else CollectorState.IDLE

    async def _dispatch(
        self,
        semaphore: asyncio.Semaphore,
        subscription: SubscriptionAccount,
        now: int,
    ) -> SettlementReport:
        async with semaphore:
            if self._stopping:
                report = SettlementReport(
                    subscription=subscription.address,
                    outcome=SettlementOutcome.ABANDONED,
                )
                self._log_attempt(report)
                return report
            return await self.settle(subscription, now)

    # ------------------------------------------------------------------
    # One subscription
    # ------------------------------------------------------------------

    async def settle(self, subscription: SubscriptionAccount, now: int) -> SettlementReport:
        """
        Build, sign, submit and confirm a single settlement.

        Never raises: every failure is mapped to a SettlementOutcome.
        """
        started = time.monotonic()
        report = SettlementReport(
            subscription=subscription.address,
            outcome=SettlementOutcome.FAILED,
        )

        try:
            op = await self.builder.build(subscription, now)
            anchor = await self.ledger.get_recent_anchor()
            wire, signature = op.sign(self.signer, anchor)
            report.signature = signature

            submitted = await self.ledger.submit(wire)
            report.signature = submitted or signature
            await self.ledger.confirm(report.signature, self.confirm_timeout)

            report.outcome = SettlementOutcome.SETTLED
            report.reward = op.reward
            logger.debug(
                "settlement_projected",
                subscription=subscription.address,
                next_billing=op.projected.next_billing_timestamp,
                cycles_billed=op.projected.cycles_billed,
                status=op.projected.status.name,
            )
        except SubscriptionVanished as e:
            report.outcome = SettlementOutcome.VANISHED
            report.error = str(e)
        except SubscriptionNotDue as e:
            report.outcome = SettlementOutcome.STALE
            report.error = str(e)
        except SubmissionRejected as e:
            report.outcome = _REJECTION_OUTCOMES[e.reason]
            report.error = str(e)
            if e.signature:
                report.signature = e.signature
        except ConfirmationTimeout as e:
            # Status unknown; the next scan re-observes it as due or settled
            report.outcome = SettlementOutcome.UNCONFIRMED
            report.error = str(e)
        except TransientLedgerError as e:
            report.outcome = SettlementOutcome.FAILED
            report.error = str(e)
        except (SettlementBuildError, DecodeError) as e:
            report.outcome = SettlementOutcome.FAILED
            report.error = str(e)
        except Exception as e:
            logger.exception("settlement_unexpected_error", subscription=subscription.address)
            report.outcome = SettlementOutcome.FAILED
            report.error = f"{type(e).__name__}: {e}"

        report.latency_ms = round((time.monotonic() - started) * 1000, 2)
        self._log_attempt(report)
        return report

    def _log_attempt(self, report: SettlementReport) -> None:
        fields = dict(
            subscription=report.subscription,
            outcome=report.outcome.value,
            signature=report.signature,
            reward=report.reward,
            latency_ms=report.latency_ms,
        )
        if report.error:
            fields["error"] = report.error

        if report.outcome in (SettlementOutcome.INSUFFICIENT_FUNDS, SettlementOutcome.UNCONFIRMED):
            logger.warning("settlement_attempt", **fields)
        elif report.outcome.is_failure:
            logger.error("settlement_attempt", **fields)
        else:
            logger.info("settlement_attempt", **fields)

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    async def run(self, max_ticks: Optional[int] = None) -> int:
        """
        Tick every poll_interval until stop() is called.

        Returns the number of ticks executed.
        """
        self._stop_event = asyncio.Event()
        if self._stopping:
            self._stop_event.set()

        loop = asyncio.get_running_loop()
        executed = 0
        logger.info(
            "collector_started",
            collector=self.signer.address,
            program_id=self.deriver.program_id,
            poll_interval=self.poll_interval,
            max_concurrency=self.max_concurrency,
        )

        try:
            while not self._stopping:
                started = loop.time()
                try:
                    await self.tick()
                except Exception:
                    # The next wake starts a fresh tick
                    logger.exception("tick_failed", tick=self._ticks)
                    self._state = CollectorState.IDLE
                executed += 1
                if max_ticks is not None and executed >= max_ticks:
                    break

                delay = max(self.poll_interval - (loop.time() - started), 0)
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._state = CollectorState.STOPPED
            self._stop_event = None
            logger.info("collector_stopped", ticks=executed)

        return executed
