"""
Pytest Configuration and Fixtures
"""

import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

from callmeter.billing.metering import MeteringEngine
from callmeter.billing.scheduler import BillingScheduler
from callmeter.config import BillingConfig
from callmeter.notify.sink import BestEffortNotifier, InMemoryNotificationSink
from callmeter.persistence.database import Database
from callmeter.persistence.repository import CallLedger, ReconciliationRepository, WalletStore

# Set test environment
os.environ["API_KEY"] = "test-key-12345"
os.environ["FREE_WINDOW_SECONDS"] = "0"
os.environ["RUN_SCHEDULER"] = "false"

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    """Test clock: T0 plus ``seconds``."""
    return T0 + timedelta(seconds=seconds)


@pytest.fixture
def db(tmp_path):
    """A fresh SQLite database in a temporary file."""
    database = Database(f"sqlite:///{tmp_path / 'callmeter-test.db'}")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def wallets(db):
    return WalletStore(db)


@pytest.fixture
def calls(db):
    return CallLedger(db)


@pytest.fixture
def flags(db):
    return ReconciliationRepository(db)


@pytest.fixture
def sink():
    return InMemoryNotificationSink()


@pytest.fixture
def engine(wallets, calls, sink, flags):
    return MeteringEngine(wallets, calls, BestEffortNotifier([sink]), flags)


@pytest.fixture
def config():
    return BillingConfig(
        rate_micros_per_second=2100,
        poll_interval_ms=1000,
        batch_size=100,
        max_concurrency=4,
        free_window_seconds=0,
        query_backoff_ms=10,
        max_backoff_ms=40,
    )


@pytest.fixture
def scheduler(engine, calls, config):
    return BillingScheduler(engine, calls, config, clock=lambda: T0)


@pytest.fixture
def connected_call(wallets, calls):
    """Factory: fund a caller and connect a call at T0."""
    def _make(balance=5000, rate=2100, caller="alice", callee="bob", free_seconds=0):
        if balance:
            wallets.credit(caller, balance, reference="seed", now=T0)
        call = calls.create_call(caller, callee, rate, now=T0)
        calls.mark_connected(call.call_id, now=T0, free_seconds=free_seconds)
        return calls.get(call.call_id)
    return _make
