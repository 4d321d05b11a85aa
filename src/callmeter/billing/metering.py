"""
Metering Engine for Live Calls

One billing step per call per poll interval:

    claim interval -> free window? -> conditional debit -> ledger commit

A "second" here is one billing unit, i.e. one poll interval of the
scheduler. Billing granularity is the poll cadence, not wall-clock seconds.

Failure asymmetry: once the wallet debit has gone through it is never rolled
back. If the ledger commit that follows fails, the wallet is ahead of the
ledger for that unit; the step is logged and flagged for reconciliation and
is never retried in line, since a retry could debit twice.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from threading import Lock
from typing import Any, Dict, Optional
import structlog

from ..notify.sink import BestEffortNotifier
from ..persistence.models import CallRecord, CallStatus, EndReason, to_timestamp
from ..persistence.repository import CallLedger, ReconciliationRepository, WalletStore

logger = structlog.get_logger()


class StepOutcome(Enum):
    """Outcome of one billing step."""
    CHARGED = "CHARGED"
    FREE_WINDOW = "FREE_WINDOW"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    CLAIM_LOST = "CLAIM_LOST"  # Another worker already took this interval
    LEDGER_DRIFT = "LEDGER_DRIFT"  # Debited, ledger commit failed
    ERROR = "ERROR"


@dataclass
class StepResult:
    """Result of running one billing step for one call."""
    call_id: str
    outcome: StepOutcome
    seconds_used: int = 0
    amount_micros: int = 0
    error: Optional[str] = None

    @property
    def charged(self) -> bool:
        return self.outcome == StepOutcome.CHARGED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "call_id": self.call_id,
            "outcome": self.outcome.value,
            "seconds_used": self.seconds_used,
            "amount_micros": self.amount_micros,
            "error": self.error,
        }


class MeteringEngine:
    """
    Executes billing steps against the wallet and call ledger.

    Stateless with respect to calls: every decision is made from the
    candidate snapshot plus conditional writes, so any number of engines
    (threads or processes) can run against the same store.
    """

    def __init__(
        self,
        wallets: WalletStore,
        calls: CallLedger,
        notifier: Optional[BestEffortNotifier] = None,
        flags: Optional[ReconciliationRepository] = None,
    ):
        self.wallets = wallets
        self.calls = calls
        self.notifier = notifier or BestEffortNotifier()
        self.flags = flags or ReconciliationRepository(calls.db)

        self._lock = Lock()
        self._metrics: Dict[str, Any] = {
            "total_steps": 0,
            "total_charged_micros": 0,
            "outcomes": {outcome.value: 0 for outcome in StepOutcome},
            "last_step_at": None,
        }

    def bill(self, call: CallRecord, now: datetime) -> StepResult:
        """
        Run one billing step for a candidate call.

        ``call`` is the snapshot returned by ``CallLedger.find_billable``; its
        ``last_billed_at`` is the value the claim compares against.
        """
        if call.status != CallStatus.CONNECTED:
            return self._finish(StepResult(call.call_id, StepOutcome.CLAIM_LOST), now)

        if not self.calls.claim(call.call_id, call.last_billed_at, now):
            logger.debug("billing_claim_lost", call_id=call.call_id)
            return self._finish(StepResult(call.call_id, StepOutcome.CLAIM_LOST), now)

        # The claim already moved last_billed_at to now, which is all a free
        # interval needs.
        if call.is_free_at(now):
            logger.debug("billing_free_window", call_id=call.call_id, free_until=to_timestamp(call.free_until))
            return self._finish(
                StepResult(call.call_id, StepOutcome.FREE_WINDOW, seconds_used=call.seconds_used),
                now,
            )

        rate = call.rate_micros_per_second
        if not self.wallets.conditional_debit(call.caller_id, rate, reference=call.call_id, now=now):
            return self._finish(self._end_for_insufficient_funds(call, now), now)

        try:
            updated = self.calls.record_billing_step(call, now)
        except Exception as e:
            return self._finish(self._flag_drift(call, now, e), now)

        self.notifier.call_updated(call.call_id, updated.seconds_used, now)
        logger.debug(
            "call_charged",
            call_id=call.call_id,
            caller_id=call.caller_id,
            amount_micros=rate,
            seconds_used=updated.seconds_used,
        )
        return self._finish(
            StepResult(
                call.call_id,
                StepOutcome.CHARGED,
                seconds_used=updated.seconds_used,
                amount_micros=rate,
            ),
            now,
        )

    def _end_for_insufficient_funds(self, call: CallRecord, now: datetime) -> StepResult:
        logger.info(
            "insufficient_funds",
            call_id=call.call_id,
            caller_id=call.caller_id,
            rate_micros=call.rate_micros_per_second,
        )
        if self.calls.terminate(call.call_id, EndReason.INSUFFICIENT_FUNDS, now):
            self.notifier.call_ended(call.call_id, EndReason.INSUFFICIENT_FUNDS)
        return StepResult(call.call_id, StepOutcome.INSUFFICIENT_FUNDS, seconds_used=call.seconds_used)

    def _flag_drift(self, call: CallRecord, now: datetime, error: Exception) -> StepResult:
        logger.error(
            "ledger_commit_failed",
            call_id=call.call_id,
            caller_id=call.caller_id,
            amount_micros=call.rate_micros_per_second,
            error=str(error),
        )
        try:
            self.flags.flag(
                call_id=call.call_id,
                user_id=call.caller_id,
                amount_micros=call.rate_micros_per_second,
                error=str(error),
                now=now,
            )
        except Exception as flag_error:
            # The log line above is then the only record of the drift.
            logger.error("reconciliation_flag_failed", call_id=call.call_id, error=str(flag_error))

        return StepResult(
            call.call_id,
            StepOutcome.LEDGER_DRIFT,
            seconds_used=call.seconds_used,
            amount_micros=call.rate_micros_per_second,
            error=str(error),
        )

    def record_error(self, call: CallRecord, now: datetime, error: Exception) -> StepResult:
        """Account for a step that raised before reaching a defined outcome."""
        return self._finish(StepResult(call.call_id, StepOutcome.ERROR, error=str(error)), now)

    def _finish(self, result: StepResult, now: datetime) -> StepResult:
        with self._lock:
            self._metrics["total_steps"] += 1
            self._metrics["outcomes"][result.outcome.value] += 1
            if result.charged:
                self._metrics["total_charged_micros"] += result.amount_micros
            self._metrics["last_step_at"] = to_timestamp(now)
        return result

    def get_metrics(self) -> Dict[str, Any]:
        """Get current metering metrics."""
        with self._lock:
            metrics = dict(self._metrics)
            metrics["outcomes"] = dict(self._metrics["outcomes"])
        return metrics
