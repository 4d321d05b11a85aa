"""
Tests for the Wallet Store

The conditional debit is the only thing standing between concurrent billing
workers and an overdraft.
"""

import threading

import pytest

from callmeter.persistence.models import WalletTransactionKind
from conftest import T0, at


class TestCredit:
    """Top-ups."""

    def test_credit_creates_wallet_lazily(self, wallets):
        """Crediting an unknown user creates the wallet."""
        assert wallets.get("alice") is None

        balance = wallets.credit("alice", 5000, now=T0)

        assert balance == 5000
        assert wallets.get("alice").balance_micros == 5000

    def test_credits_accumulate(self, wallets):
        wallets.credit("alice", 5000, now=T0)
        balance = wallets.credit("alice", 2500, now=at(1))

        assert balance == 7500

    @pytest.mark.parametrize("amount", [0, -100, 1.5])
    def test_invalid_amount_rejected(self, wallets, amount):
        with pytest.raises(ValueError):
            wallets.credit("alice", amount)

    def test_missing_wallet_reads_as_zero(self, wallets):
        assert wallets.get_balance("nobody") == 0


class TestConditionalDebit:
    """Atomic debit iff the balance covers it."""

    def test_debit_when_covered(self, wallets):
        wallets.credit("alice", 5000, now=T0)

        assert wallets.conditional_debit("alice", 2100, reference="call-1", now=at(1)) is True
        assert wallets.get_balance("alice") == 2900

    def test_debit_rejected_when_short(self, wallets):
        """A rejected debit leaves the balance untouched."""
        wallets.credit("alice", 800, now=T0)

        assert wallets.conditional_debit("alice", 2100, now=at(1)) is False
        assert wallets.get_balance("alice") == 800

    def test_exact_balance_can_be_spent(self, wallets):
        wallets.credit("alice", 2100, now=T0)

        assert wallets.conditional_debit("alice", 2100) is True
        assert wallets.get_balance("alice") == 0

    def test_debit_without_wallet_rejected(self, wallets):
        assert wallets.conditional_debit("ghost", 1) is False
        assert wallets.get("ghost") is None

    def test_debit_recorded_with_balance_after(self, wallets):
        wallets.credit("alice", 5000, reference="topup-1", now=T0)
        wallets.conditional_debit("alice", 2100, reference="call-1", now=at(1))

        txns = wallets.transactions("alice")

        assert [t.kind for t in txns] == [WalletTransactionKind.DEBIT, WalletTransactionKind.CREDIT]
        assert txns[0].balance_after == 2900
        assert txns[0].reference == "call-1"
        assert wallets.debits_for_reference("call-1") == 2100

    def test_rejected_debit_not_recorded(self, wallets):
        wallets.credit("alice", 100, now=T0)
        wallets.conditional_debit("alice", 2100, reference="call-1")

        assert wallets.debits_for_reference("call-1") == 0


class TestConcurrentDebits:
    """Balance never goes negative under racing debits."""

    def test_racing_debits_never_overdraw(self, wallets):
        wallets.credit("alice", 10500, now=T0)
        results = []
        lock = threading.Lock()
        barrier = threading.Barrier(20)

        def debit():
            barrier.wait()
            ok = wallets.conditional_debit("alice", 1000, reference="race")
            with lock:
                results.append(ok)

        threads = [threading.Thread(target=debit) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 10
        assert wallets.get_balance("alice") == 500
        assert wallets.debits_for_reference("race") == 10000

    def test_racing_credit_and_debit_lose_nothing(self, wallets):
        wallets.credit("alice", 10000, now=T0)
        barrier = threading.Barrier(2)

        def debit_many():
            barrier.wait()
            for _ in range(10):
                wallets.conditional_debit("alice", 100)

        def credit_many():
            barrier.wait()
            for _ in range(10):
                wallets.credit("alice", 50)

        threads = [threading.Thread(target=debit_many), threading.Thread(target=credit_many)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert wallets.get_balance("alice") == 10000 - 1000 + 500
