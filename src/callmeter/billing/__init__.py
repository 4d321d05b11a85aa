"""
Call Meter - Billing Module

Real-time prepaid metering for voice/video calls:
- MeteringEngine: one claim/debit/commit step per call per interval
- BillingScheduler: periodic, bounded-concurrency driver of the engine
- Reconciler: read-only audit of calls against ledger and wallet debits
"""

from .metering import MeteringEngine, StepOutcome, StepResult
from .scheduler import BillingScheduler, CycleResult
from .reconciliation import CallAudit, Reconciler

__all__ = [
    "MeteringEngine",
    "StepOutcome",
    "StepResult",
    "BillingScheduler",
    "CycleResult",
    "CallAudit",
    "Reconciler",
]
