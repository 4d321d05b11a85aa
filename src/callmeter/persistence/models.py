"""
Data Models for Persistence Layer

Typed records for calls, wallets and the ledger. Every record is validated
once, when it is built, so rows coming out of the store and values going
into it obey the same rules (non-negative balances, monotonic counters,
known states).
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class RecordValidationError(ValueError):
    """Raised when a record violates a storage invariant."""
    pass


class CallStatus(Enum):
    """Lifecycle states of a call."""
    RINGING = "ringing"
    CONNECTED = "connected"
    ENDED = "ended"


class EndReason(Enum):
    """Why a call ended."""
    NORMAL = "normal"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    ERROR = "error"


class WalletTransactionKind(Enum):
    DEBIT = "debit"
    CREDIT = "credit"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_timestamp(value: Optional[datetime]) -> Optional[str]:
    """
    Serialize a datetime for storage.

    Fixed-width UTC ISO-8601 so that SQLite's text comparison orders
    timestamps correctly and equality checks round-trip exactly.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp (ISO text from SQLite, datetime from PostgreSQL)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _require_non_negative(name: str, value: int) -> None:
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise RecordValidationError(f"{name} must be a non-negative integer, got {value!r}")


def _require_positive(name: str, value: int) -> None:
    if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
        raise RecordValidationError(f"{name} must be a positive integer, got {value!r}")


@dataclass
class CallRecord:
    """Persisted call record."""
    call_id: str
    caller_id: str
    callee_id: str
    rate_micros_per_second: int
    status: CallStatus = CallStatus.RINGING
    started_at: Optional[datetime] = None
    last_billed_at: Optional[datetime] = None
    seconds_used: int = 0
    amount_charged_micros: int = 0
    free_until: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    end_reason: Optional[EndReason] = None

    def __post_init__(self):
        try:
            if isinstance(self.status, str):
                self.status = CallStatus(self.status)
            if isinstance(self.end_reason, str):
                self.end_reason = EndReason(self.end_reason)
        except ValueError as e:
            raise RecordValidationError(str(e)) from e

        if not self.call_id or not self.caller_id:
            raise RecordValidationError("call_id and caller_id are required")
        _require_positive("rate_micros_per_second", self.rate_micros_per_second)
        _require_non_negative("seconds_used", self.seconds_used)
        _require_non_negative("amount_charged_micros", self.amount_charged_micros)

    def is_free_at(self, now: datetime) -> bool:
        """True while the grace window is still open at ``now``."""
        return self.free_until is not None and self.free_until > now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "call_id": self.call_id,
            "caller_id": self.caller_id,
            "callee_id": self.callee_id,
            "status": self.status.value,
            "started_at": to_timestamp(self.started_at),
            "last_billed_at": to_timestamp(self.last_billed_at),
            "seconds_used": self.seconds_used,
            "amount_charged_micros": self.amount_charged_micros,
            "rate_micros_per_second": self.rate_micros_per_second,
            "free_until": to_timestamp(self.free_until),
            "created_at": to_timestamp(self.created_at),
            "ended_at": to_timestamp(self.ended_at),
            "end_reason": self.end_reason.value if self.end_reason else None,
        }

    def to_db_tuple(self) -> tuple:
        """Convert to database insert tuple."""
        return (
            self.call_id,
            self.caller_id,
            self.callee_id,
            self.status.value,
            to_timestamp(self.started_at),
            to_timestamp(self.last_billed_at),
            self.seconds_used,
            self.amount_charged_micros,
            self.rate_micros_per_second,
            to_timestamp(self.free_until),
            to_timestamp(self.created_at),
            to_timestamp(self.ended_at),
            self.end_reason.value if self.end_reason else None,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CallRecord":
        return cls(
            call_id=row["call_id"],
            caller_id=row["caller_id"],
            callee_id=row["callee_id"],
            rate_micros_per_second=int(row["rate_micros_per_second"]),
            status=row.get("status", CallStatus.RINGING.value),
            started_at=parse_timestamp(row.get("started_at")),
            last_billed_at=parse_timestamp(row.get("last_billed_at")),
            seconds_used=int(row.get("seconds_used") or 0),
            amount_charged_micros=int(row.get("amount_charged_micros") or 0),
            free_until=parse_timestamp(row.get("free_until")),
            created_at=parse_timestamp(row["created_at"]),
            ended_at=parse_timestamp(row.get("ended_at")),
            end_reason=row.get("end_reason"),
        )


@dataclass
class WalletRecord:
    """Persisted wallet record."""
    user_id: str
    balance_micros: int = 0
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if not self.user_id:
            raise RecordValidationError("user_id is required")
        _require_non_negative("balance_micros", self.balance_micros)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "balance_micros": self.balance_micros,
            "updated_at": to_timestamp(self.updated_at),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "WalletRecord":
        return cls(
            user_id=row["user_id"],
            balance_micros=int(row["balance_micros"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )


@dataclass(frozen=True)
class LedgerEntryRecord:
    """
    One committed billing step.

    Frozen: ledger entries are written once and never changed.
    """
    entry_id: str
    user_id: str
    call_id: str
    amount_micros: int
    created_at: datetime
    seconds_billed: int = 1

    def __post_init__(self):
        _require_positive("amount_micros", self.amount_micros)
        _require_positive("seconds_billed", self.seconds_billed)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "user_id": self.user_id,
            "call_id": self.call_id,
            "seconds_billed": self.seconds_billed,
            "amount_micros": self.amount_micros,
            "created_at": to_timestamp(self.created_at),
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.entry_id,
            self.user_id,
            self.call_id,
            self.seconds_billed,
            self.amount_micros,
            to_timestamp(self.created_at),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "LedgerEntryRecord":
        return cls(
            entry_id=row["entry_id"],
            user_id=row["user_id"],
            call_id=row["call_id"],
            seconds_billed=int(row.get("seconds_billed") or 1),
            amount_micros=int(row["amount_micros"]),
            created_at=parse_timestamp(row["created_at"]),
        )


@dataclass(frozen=True)
class WalletTransactionRecord:
    """A balance change, recorded in the same transaction as the change."""
    txn_id: str
    user_id: str
    kind: WalletTransactionKind
    amount_micros: int
    balance_after: int
    created_at: datetime
    reference: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "txn_id": self.txn_id,
            "user_id": self.user_id,
            "kind": self.kind.value,
            "amount_micros": self.amount_micros,
            "balance_after": self.balance_after,
            "reference": self.reference,
            "created_at": to_timestamp(self.created_at),
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.txn_id,
            self.user_id,
            self.kind.value,
            self.amount_micros,
            self.balance_after,
            self.reference,
            to_timestamp(self.created_at),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "WalletTransactionRecord":
        return cls(
            txn_id=row["txn_id"],
            user_id=row["user_id"],
            kind=WalletTransactionKind(row["kind"]),
            amount_micros=int(row["amount_micros"]),
            balance_after=int(row["balance_after"]),
            reference=row.get("reference"),
            created_at=parse_timestamp(row["created_at"]),
        )


@dataclass
class ReconciliationFlag:
    """A debit that reached the wallet but not the ledger."""
    flag_id: str
    call_id: str
    user_id: str
    amount_micros: int
    created_at: datetime
    error: Optional[str] = None
    resolved: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "flag_id": self.flag_id,
            "call_id": self.call_id,
            "user_id": self.user_id,
            "amount_micros": self.amount_micros,
            "error": self.error,
            "created_at": to_timestamp(self.created_at),
            "resolved": self.resolved,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.flag_id,
            self.call_id,
            self.user_id,
            self.amount_micros,
            self.error,
            to_timestamp(self.created_at),
            self.resolved,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ReconciliationFlag":
        return cls(
            flag_id=row["flag_id"],
            call_id=row["call_id"],
            user_id=row["user_id"],
            amount_micros=int(row["amount_micros"]),
            error=row.get("error"),
            created_at=parse_timestamp(row["created_at"]),
            resolved=bool(row.get("resolved", 0)),
        )
