"""
Persistence Layer for Call Meter

Supports SQLite (dev) and PostgreSQL (production).
"""

from .database import Database, Transaction, get_database
from .models import (
    CallRecord,
    CallStatus,
    EndReason,
    LedgerEntryRecord,
    ReconciliationFlag,
    RecordValidationError,
    WalletRecord,
    WalletTransactionKind,
    WalletTransactionRecord,
)
from .repository import CallLedger, LedgerCommitError, ReconciliationRepository, WalletStore

__all__ = [
    "Database",
    "Transaction",
    "get_database",
    "CallRecord",
    "CallStatus",
    "EndReason",
    "LedgerEntryRecord",
    "ReconciliationFlag",
    "RecordValidationError",
    "WalletRecord",
    "WalletTransactionKind",
    "WalletTransactionRecord",
    "CallLedger",
    "LedgerCommitError",
    "ReconciliationRepository",
    "WalletStore",
]
