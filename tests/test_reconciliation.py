"""
Tests for ledger reconciliation
"""

from callmeter.billing.reconciliation import Reconciler
from conftest import T0, at


class TestAudit:
    def test_clean_call_is_consistent(self, engine, calls, wallets, flags, connected_call):
        call = connected_call(balance=10000)
        for i in range(3):
            engine.bill(calls.get(call.call_id), at(i))

        audit = Reconciler(calls, wallets, flags).audit_call(call.call_id)

        assert audit.consistent
        assert audit.drift_micros == 0
        assert audit.ledger_entries == 3
        assert audit.wallet_debit_micros == 6300

    def test_unknown_call(self, calls, wallets):
        assert Reconciler(calls, wallets).audit_call("nope") is None

    def test_tampered_counter_detected(self, db, calls, wallets, connected_call):
        call = connected_call()
        calls.record_billing_step(call, T0)
        db.execute_update("UPDATE calls SET seconds_used = 5 WHERE call_id = ?", (call.call_id,))

        audit = Reconciler(calls, wallets).audit_call(call.call_id)

        assert audit.consistent is False


class TestFlags:
    def test_report_lists_open_flags_with_audit(self, calls, wallets, flags, connected_call):
        call = connected_call()
        flags.flag(call.call_id, "alice", 2100, error="timeout", now=T0)

        report = Reconciler(calls, wallets, flags).report()

        assert len(report) == 1
        assert report[0]["flag"]["call_id"] == call.call_id
        assert report[0]["audit"]["call_id"] == call.call_id

    def test_resolve_closes_flag_once(self, calls, wallets, flags, connected_call):
        call = connected_call()
        flag = flags.flag(call.call_id, "alice", 2100, now=T0)
        reconciler = Reconciler(calls, wallets, flags)

        assert reconciler.resolve(flag.flag_id) is True
        assert reconciler.resolve(flag.flag_id) is False
        assert reconciler.report() == []
