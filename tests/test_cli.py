"""
Tests for the command line
"""

import sys

import pytest

from callmeter import cli
from callmeter.persistence.database import Database
from callmeter.persistence.repository import CallLedger


@pytest.fixture
def db_url(tmp_path, monkeypatch):
    url = f"sqlite:///{tmp_path / 'cli-test.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    return url


def run_cli(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["callmeter", *argv])
    cli.main()


class TestWalletCommands:
    def test_topup_then_balance(self, db_url, monkeypatch, capsys):
        run_cli(monkeypatch, "topup", "alice", "5000", "--reference", "pay_1")
        run_cli(monkeypatch, "balance", "alice")

        out = capsys.readouterr().out
        assert "Balance: 5000 micros" in out
        assert "alice: 5000 micros" in out
        assert "pay_1" in out

    def test_topup_rejects_non_positive(self, db_url, monkeypatch):
        with pytest.raises(SystemExit) as exc:
            run_cli(monkeypatch, "topup", "alice", "0")

        assert exc.value.code == 1


class TestAuditCommand:
    def test_unknown_call(self, db_url, monkeypatch):
        with pytest.raises(SystemExit) as exc:
            run_cli(monkeypatch, "audit", "missing")

        assert exc.value.code == 1

    def test_consistent_call(self, db_url, monkeypatch, capsys):
        db = Database(db_url)
        db.initialize()
        call = CallLedger(db).create_call("alice", "bob", 2100)
        db.close()

        run_cli(monkeypatch, "audit", call.call_id)

        assert "Consistent: Yes" in capsys.readouterr().out


class TestConfigErrors:
    def test_bad_config_exits_with_code_2(self, db_url, monkeypatch):
        monkeypatch.setenv("BATCH_SIZE", "zero")

        with pytest.raises(SystemExit) as exc:
            run_cli(monkeypatch, "init-db")

        assert exc.value.code == 2
