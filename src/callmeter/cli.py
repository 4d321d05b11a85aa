"""
Call Meter CLI

Commands:
  serve     - Run the HTTP server (and the scheduler if RUN_SCHEDULER=true)
  worker    - Run the billing scheduler only
  init-db   - Create the schema
  topup     - Credit a wallet
  balance   - Show a wallet balance
  audit     - Check a call against its ledger and wallet debits
"""

import argparse
import signal
import sys
from threading import Event

from .config import BillingConfig, ConfigurationError


def _load_config() -> BillingConfig:
    try:
        return BillingConfig.from_env()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)


def _database(config: BillingConfig):
    from .persistence.database import Database

    db = Database(config.database_url)
    db.initialize()
    return db


def cmd_serve(args):
    """Run the HTTP server."""
    from .api.server import run

    config = _load_config()
    port = args.port or config.port
    print(f"Starting Call Meter on {args.host}:{port}")
    run(host=args.host, port=port, reload=args.reload)


def cmd_worker(args):
    """Run the billing scheduler until SIGINT/SIGTERM."""
    from .billing.metering import MeteringEngine
    from .billing.scheduler import BillingScheduler
    from .persistence.repository import CallLedger, WalletStore

    config = _load_config()
    db = _database(config)
    calls = CallLedger(db)
    engine = MeteringEngine(WalletStore(db), calls)
    scheduler = BillingScheduler(engine, calls, config)

    stop = Event()

    def _shutdown(signum, frame):
        print("Shutting down billing worker...")
        stop.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    scheduler.run(stop)
    db.close()


def cmd_init_db(args):
    """Create the schema."""
    config = _load_config()
    db = _database(config)
    print(f"Schema ready at {config.database_url}")
    db.close()


def cmd_topup(args):
    """Credit a wallet."""
    from .persistence.repository import WalletStore

    config = _load_config()
    wallets = WalletStore(_database(config))
    try:
        balance = wallets.credit(args.user, args.amount, reference=args.reference)
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"Credited {args.amount} micros to {args.user}")
    print(f"  Balance: {balance} micros")


def cmd_balance(args):
    """Show a wallet balance."""
    from .persistence.repository import WalletStore

    config = _load_config()
    wallets = WalletStore(_database(config))
    print(f"{args.user}: {wallets.get_balance(args.user)} micros")
    for txn in wallets.transactions(args.user, limit=args.limit):
        sign = "-" if txn.kind.value == "debit" else "+"
        print(f"  {txn.created_at.isoformat()}  {sign}{txn.amount_micros}  -> {txn.balance_after}  {txn.reference or ''}")


def cmd_audit(args):
    """Check a call against its ledger and wallet debits."""
    from .billing.reconciliation import Reconciler
    from .persistence.repository import CallLedger, WalletStore

    config = _load_config()
    db = _database(config)
    audit = Reconciler(CallLedger(db), WalletStore(db)).audit_call(args.call_id)
    if audit is None:
        print(f"Error: call not found: {args.call_id}")
        sys.exit(1)

    print(f"Call {audit.call_id}")
    print("=" * 40)
    print(f"Units billed: {audit.seconds_used}")
    print(f"Amount charged: {audit.amount_charged_micros} micros")
    print(f"Ledger total: {audit.ledger_total_micros} micros ({audit.ledger_entries} entries)")
    print(f"Wallet debits: {audit.wallet_debit_micros} micros")
    print(f"Consistent: {'Yes' if audit.consistent else 'No'}")
    print(f"Drift: {audit.drift_micros} micros")
    if not audit.consistent or audit.drift_micros:
        sys.exit(1)


def main():
    parser = argparse.ArgumentParser(
        description="Call Meter - prepaid real-time call billing",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=None)
    serve_parser.add_argument("--reload", action="store_true")

    # worker
    subparsers.add_parser("worker", help="Run the billing scheduler")

    # init-db
    subparsers.add_parser("init-db", help="Create the database schema")

    # topup
    topup_parser = subparsers.add_parser("topup", help="Credit a wallet")
    topup_parser.add_argument("user", help="User ID")
    topup_parser.add_argument("amount", type=int, help="Amount in micros")
    topup_parser.add_argument("--reference", help="Payment reference")

    # balance
    balance_parser = subparsers.add_parser("balance", help="Show wallet balance")
    balance_parser.add_argument("user", help="User ID")
    balance_parser.add_argument("--limit", type=int, default=10, help="Transactions to show")

    # audit
    audit_parser = subparsers.add_parser("audit", help="Audit a call")
    audit_parser.add_argument("call_id", help="Call ID")

    args = parser.parse_args()

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "worker":
        cmd_worker(args)
    elif args.command == "init-db":
        cmd_init_db(args)
    elif args.command == "topup":
        cmd_topup(args)
    elif args.command == "balance":
        cmd_balance(args)
    elif args.command == "audit":
        cmd_audit(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
