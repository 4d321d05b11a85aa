"""
Ledger reconciliation checks.

Read-only. Compares, per call, the call counters, the ledger, and the wallet
debits recorded against the call. A positive drift means the wallet was
debited for units the ledger never recorded (a failed post-debit commit).
Nothing here moves money; resolving a flag only marks it as handled.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import structlog

from ..persistence.repository import CallLedger, ReconciliationRepository, WalletStore

logger = structlog.get_logger()


@dataclass
class CallAudit:
    """Consistency snapshot for one call."""
    call_id: str
    seconds_used: int
    rate_micros_per_second: int
    amount_charged_micros: int
    ledger_total_micros: int
    ledger_entries: int
    wallet_debit_micros: int

    @property
    def consistent(self) -> bool:
        """amount charged == seconds * rate == sum of ledger entries"""
        return (
            self.amount_charged_micros == self.seconds_used * self.rate_micros_per_second
            and self.amount_charged_micros == self.ledger_total_micros
            and self.ledger_entries == self.seconds_used
        )

    @property
    def drift_micros(self) -> int:
        return self.wallet_debit_micros - self.ledger_total_micros

    def to_dict(self) -> Dict[str, Any]:
        return {
            "call_id": self.call_id,
            "seconds_used": self.seconds_used,
            "rate_micros_per_second": self.rate_micros_per_second,
            "amount_charged_micros": self.amount_charged_micros,
            "ledger_total_micros": self.ledger_total_micros,
            "ledger_entries": self.ledger_entries,
            "wallet_debit_micros": self.wallet_debit_micros,
            "consistent": self.consistent,
            "drift_micros": self.drift_micros,
        }


class Reconciler:
    """Audits calls and lists debits flagged for follow-up."""

    def __init__(
        self,
        calls: CallLedger,
        wallets: WalletStore,
        flags: Optional[ReconciliationRepository] = None,
    ):
        self.calls = calls
        self.wallets = wallets
        self.flags = flags or ReconciliationRepository(calls.db)

    def audit_call(self, call_id: str) -> Optional[CallAudit]:
        call = self.calls.get(call_id)
        if call is None:
            return None

        entries = self.calls.ledger_entries(call_id)
        audit = CallAudit(
            call_id=call_id,
            seconds_used=call.seconds_used,
            rate_micros_per_second=call.rate_micros_per_second,
            amount_charged_micros=call.amount_charged_micros,
            ledger_total_micros=sum(e.amount_micros for e in entries),
            ledger_entries=len(entries),
            wallet_debit_micros=self.wallets.debits_for_reference(call_id),
        )
        if not audit.consistent or audit.drift_micros:
            logger.warning("call_audit_mismatch", **audit.to_dict())
        return audit

    def report(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Open flags, each with a fresh audit of its call."""
        report = []
        for flag in self.flags.list_open(limit=limit):
            audit = self.audit_call(flag.call_id)
            report.append({
                "flag": flag.to_dict(),
                "audit": audit.to_dict() if audit else None,
            })
        return report

    def resolve(self, flag_id: str) -> bool:
        return self.flags.resolve(flag_id)
