"""
Repository Layer for Call Meter

WalletStore and CallLedger own every write to the financial record. Each
mutation is one conditional statement, or a short transaction whose first
statement is conditional, so concurrent billing workers are serialized by the
database rather than by in-process locks.
"""

import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
import structlog

from .database import Database, get_database
from .models import (
    CallRecord,
    CallStatus,
    EndReason,
    LedgerEntryRecord,
    ReconciliationFlag,
    WalletRecord,
    WalletTransactionKind,
    WalletTransactionRecord,
    to_timestamp,
    utcnow,
)

logger = structlog.get_logger()


class LedgerCommitError(Exception):
    """Raised when a billing step could not be written to the call ledger."""
    pass


def _require_amount(amount: int) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise ValueError(f"amount must be a positive integer number of micros, got {amount!r}")


class WalletStore:
    """
    Prepaid balances.

    ``conditional_debit`` and ``credit`` are the only writers of
    ``wallets.balance_micros``; both are single atomic statements.
    """

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def get(self, user_id: str) -> Optional[WalletRecord]:
        """Get a wallet by user ID."""
        results = self.db.execute(
            "SELECT * FROM wallets WHERE user_id = ?",
            (user_id,)
        )
        return WalletRecord.from_row(results[0]) if results else None

    def get_balance(self, user_id: str) -> int:
        """Balance in micros; a missing wallet reads as zero."""
        wallet = self.get(user_id)
        return wallet.balance_micros if wallet else 0

    def conditional_debit(
        self,
        user_id: str,
        amount: int,
        reference: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Debit ``amount`` iff the balance covers it.

        Returns False (and changes nothing) when funds are insufficient or the
        wallet does not exist. The guard and the decrement are the same
        statement, so two racing debits can never both pass on a balance that
        covers only one of them.
        """
        _require_amount(amount)
        now = now or utcnow()

        with self.db.transaction() as tx:
            updated = tx.execute_update(
                """UPDATE wallets
                   SET balance_micros = balance_micros - ?, updated_at = ?
                   WHERE user_id = ? AND balance_micros >= ?""",
                (amount, to_timestamp(now), user_id, amount)
            )
            if updated != 1:
                logger.debug("wallet_debit_rejected", user_id=user_id, amount_micros=amount)
                return False

            balance_after = tx.execute(
                "SELECT balance_micros FROM wallets WHERE user_id = ?",
                (user_id,)
            )[0]["balance_micros"]
            self._record_transaction(
                tx, user_id, WalletTransactionKind.DEBIT, amount, int(balance_after), reference, now
            )

        logger.debug("wallet_debited", user_id=user_id, amount_micros=amount, balance_after=balance_after)
        return True

    def credit(
        self,
        user_id: str,
        amount: int,
        reference: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """Top up a wallet, creating it if needed. Returns the new balance."""
        _require_amount(amount)
        now = now or utcnow()

        with self.db.transaction() as tx:
            tx.execute_update(
                """INSERT INTO wallets (user_id, balance_micros, updated_at)
                   VALUES (?, ?, ?)
                   ON CONFLICT (user_id) DO UPDATE SET
                       balance_micros = wallets.balance_micros + excluded.balance_micros,
                       updated_at = excluded.updated_at""",
                (user_id, amount, to_timestamp(now))
            )
            balance_after = int(tx.execute(
                "SELECT balance_micros FROM wallets WHERE user_id = ?",
                (user_id,)
            )[0]["balance_micros"])
            self._record_transaction(
                tx, user_id, WalletTransactionKind.CREDIT, amount, balance_after, reference, now
            )

        logger.info("wallet_credited", user_id=user_id, amount_micros=amount, balance_after=balance_after)
        return balance_after

    def _record_transaction(
        self,
        tx: Any,
        user_id: str,
        kind: WalletTransactionKind,
        amount: int,
        balance_after: int,
        reference: Optional[str],
        now: datetime,
    ) -> None:
        record = WalletTransactionRecord(
            txn_id=str(uuid.uuid4()),
            user_id=user_id,
            kind=kind,
            amount_micros=amount,
            balance_after=balance_after,
            reference=reference,
            created_at=now,
        )
        tx.execute_update(
            """INSERT INTO wallet_transactions
               (txn_id, user_id, kind, amount_micros, balance_after, reference, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            record.to_db_tuple()
        )

    def transactions(self, user_id: str, limit: int = 100) -> List[WalletTransactionRecord]:
        """Recent balance changes for a user, newest first."""
        results = self.db.execute(
            "SELECT * FROM wallet_transactions WHERE user_id = ? ORDER BY created_at DESC LIMIT ?",
            (user_id, limit)
        )
        return [WalletTransactionRecord.from_row(r) for r in results]

    def debits_for_reference(self, reference: str) -> int:
        """Total micros debited against a reference (a call ID for metered debits)."""
        results = self.db.execute(
            """SELECT COALESCE(SUM(amount_micros), 0) AS total
               FROM wallet_transactions WHERE reference = ? AND kind = ?""",
            (reference, WalletTransactionKind.DEBIT.value)
        )
        return int(results[0]["total"]) if results else 0


class CallLedger:
    """Call state plus the append-only ledger of billed units."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def create_call(
        self,
        caller_id: str,
        callee_id: str,
        rate_micros_per_second: int,
        call_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CallRecord:
        """Create a new ringing call. The rate is fixed for the call's lifetime."""
        call = CallRecord(
            call_id=call_id or str(uuid.uuid4()),
            caller_id=caller_id,
            callee_id=callee_id,
            rate_micros_per_second=rate_micros_per_second,
            created_at=now or utcnow(),
        )
        self.db.execute_update(
            """INSERT INTO calls
               (call_id, caller_id, callee_id, status, started_at, last_billed_at,
                seconds_used, amount_charged_micros, rate_micros_per_second,
                free_until, created_at, ended_at, end_reason)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            call.to_db_tuple()
        )
        logger.info(
            "call_created",
            call_id=call.call_id,
            caller_id=caller_id,
            rate_micros_per_second=rate_micros_per_second,
        )
        return call

    def get(self, call_id: str) -> Optional[CallRecord]:
        """Get a call by ID."""
        results = self.db.execute(
            "SELECT * FROM calls WHERE call_id = ?",
            (call_id,)
        )
        return CallRecord.from_row(results[0]) if results else None

    def mark_connected(
        self,
        call_id: str,
        now: Optional[datetime] = None,
        free_seconds: int = 0,
    ) -> bool:
        """
        Move a ringing call to connected.

        The free window, if any, starts when both parties join, so ringing
        time never eats into it.
        """
        now = now or utcnow()
        free_until = now + timedelta(seconds=free_seconds) if free_seconds > 0 else None
        updated = self.db.execute_update(
            """UPDATE calls SET status = ?, started_at = ?, free_until = COALESCE(free_until, ?)
               WHERE call_id = ? AND status = ?""",
            (
                CallStatus.CONNECTED.value,
                to_timestamp(now),
                to_timestamp(free_until),
                call_id,
                CallStatus.RINGING.value,
            )
        )
        if updated:
            logger.info("call_connected", call_id=call_id, free_until=to_timestamp(free_until))
        return updated == 1

    def find_billable(
        self,
        now: datetime,
        poll_interval: timedelta,
        batch_size: int,
    ) -> List[CallRecord]:
        """
        Connected calls due for their next billing step.

        Never-billed calls come first, then the stalest. Calls inside a free
        window are returned too; the engine decides what to do with them.
        """
        cutoff = now - poll_interval
        results = self.db.execute(
            """SELECT * FROM calls
               WHERE status = ?
                 AND (last_billed_at IS NULL OR last_billed_at <= ?)
               ORDER BY (last_billed_at IS NOT NULL), last_billed_at
               LIMIT ?""",
            (CallStatus.CONNECTED.value, to_timestamp(cutoff), batch_size)
        )
        return [CallRecord.from_row(r) for r in results]

    def claim(
        self,
        call_id: str,
        observed_last_billed_at: Optional[datetime],
        now: datetime,
    ) -> bool:
        """
        Take the current billing interval for this call.

        Compare-and-swap on ``last_billed_at``: succeeds only if the value is
        still the one the caller saw when selecting the call. Of several
        workers holding the same snapshot, exactly one wins.
        """
        if observed_last_billed_at is None:
            updated = self.db.execute_update(
                """UPDATE calls SET last_billed_at = ?
                   WHERE call_id = ? AND status = ? AND last_billed_at IS NULL""",
                (to_timestamp(now), call_id, CallStatus.CONNECTED.value)
            )
        else:
            updated = self.db.execute_update(
                """UPDATE calls SET last_billed_at = ?
                   WHERE call_id = ? AND status = ? AND last_billed_at = ?""",
                (
                    to_timestamp(now),
                    call_id,
                    CallStatus.CONNECTED.value,
                    to_timestamp(observed_last_billed_at),
                )
            )
        return updated == 1

    def terminate(
        self,
        call_id: str,
        reason: EndReason,
        now: Optional[datetime] = None,
    ) -> bool:
        """End a call. Returns False if it had already ended."""
        now = now or utcnow()
        updated = self.db.execute_update(
            """UPDATE calls SET status = ?, end_reason = ?, ended_at = ?
               WHERE call_id = ? AND status != ?""",
            (
                CallStatus.ENDED.value,
                reason.value,
                to_timestamp(now),
                call_id,
                CallStatus.ENDED.value,
            )
        )
        if updated:
            logger.info("call_terminated", call_id=call_id, reason=reason.value)
        return updated == 1

    def record_billing_step(self, call: CallRecord, now: datetime) -> CallRecord:
        """
        Commit one billed unit: counters, ``last_billed_at`` and a new ledger
        entry, all in one transaction. Returns the updated call.

        Raises LedgerCommitError (or the driver's own error) if nothing was
        written.
        """
        entry = LedgerEntryRecord(
            entry_id=str(uuid.uuid4()),
            user_id=call.caller_id,
            call_id=call.call_id,
            amount_micros=call.rate_micros_per_second,
            created_at=now,
        )

        with self.db.transaction() as tx:
            updated = tx.execute_update(
                """UPDATE calls
                   SET seconds_used = seconds_used + 1,
                       amount_charged_micros = amount_charged_micros + ?,
                       last_billed_at = ?
                   WHERE call_id = ?""",
                (call.rate_micros_per_second, to_timestamp(now), call.call_id)
            )
            if updated != 1:
                raise LedgerCommitError(f"Call not found: {call.call_id}")

            tx.execute_update(
                """INSERT INTO ledger_entries
                   (entry_id, user_id, call_id, seconds_billed, amount_micros, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                entry.to_db_tuple()
            )
            row = tx.execute("SELECT * FROM calls WHERE call_id = ?", (call.call_id,))[0]

        return CallRecord.from_row(row)

    def ledger_entries(self, call_id: str) -> List[LedgerEntryRecord]:
        """Ledger entries for a call, oldest first."""
        results = self.db.execute(
            "SELECT * FROM ledger_entries WHERE call_id = ? ORDER BY created_at ASC",
            (call_id,)
        )
        return [LedgerEntryRecord.from_row(r) for r in results]

    def ledger_total(self, call_id: str) -> int:
        """Sum of ledger amounts for a call."""
        results = self.db.execute(
            "SELECT COALESCE(SUM(amount_micros), 0) AS total FROM ledger_entries WHERE call_id = ?",
            (call_id,)
        )
        return int(results[0]["total"]) if results else 0

    def count_by_status(self) -> Dict[str, int]:
        results = self.db.execute(
            "SELECT status, COUNT(*) AS cnt FROM calls GROUP BY status"
        )
        counts = {status.value: 0 for status in CallStatus}
        for row in results:
            counts[row["status"]] = int(row["cnt"])
        return counts


class ReconciliationRepository:
    """Flags left behind by debits whose ledger commit failed."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def flag(
        self,
        call_id: str,
        user_id: str,
        amount_micros: int,
        error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ReconciliationFlag:
        record = ReconciliationFlag(
            flag_id=str(uuid.uuid4()),
            call_id=call_id,
            user_id=user_id,
            amount_micros=amount_micros,
            error=error,
            created_at=now or utcnow(),
        )
        self.db.execute_update(
            """INSERT INTO reconciliation_flags
               (flag_id, call_id, user_id, amount_micros, error, created_at, resolved)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            record.to_db_tuple()
        )
        logger.warning(
            "reconciliation_flagged",
            flag_id=record.flag_id,
            call_id=call_id,
            user_id=user_id,
            amount_micros=amount_micros,
        )
        return record

    def list_open(self, limit: int = 100) -> List[ReconciliationFlag]:
        results = self.db.execute(
            "SELECT * FROM reconciliation_flags WHERE resolved = ? ORDER BY created_at ASC LIMIT ?",
            (False, limit)
        )
        return [ReconciliationFlag.from_row(r) for r in results]

    def resolve(self, flag_id: str) -> bool:
        updated = self.db.execute_update(
            "UPDATE reconciliation_flags SET resolved = ? WHERE flag_id = ? AND resolved = ?",
            (True, flag_id, False)
        )
        if updated:
            logger.info("reconciliation_resolved", flag_id=flag_id)
        return updated == 1
