#!/usr/bin/env python
"""Ledger inspection and operator controls.

Usage:
    python scripts/transactions.py --db p2ptrader.db list [--limit 50]
    python scripts/transactions.py --db p2ptrader.db show <transaction_id>
    python scripts/transactions.py --db p2ptrader.db blacklist
    python scripts/transactions.py --db p2ptrader.db confirm-payment <transaction_id>
    python scripts/transactions.py --db p2ptrader.db get-mode
    python scripts/transactions.py --db p2ptrader.db set-mode manual|automatic
"""
import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from p2ptrader.app import MODE_SETTING
from p2ptrader.models import TransactionStatus
from p2ptrader.orchestrator import Mode
from p2ptrader.persistence_sqlite import SQLiteStore


def list_transactions(store, limit):
    rows = store.list_transactions(limit=limit)
    if not rows:
        print("No transactions found")
        return
    print(f"{'ID':<6} {'Order':<22} {'Status':<18} {'Step':<5} {'Review':<7} {'Ad':<6} {'Payout':<7}")
    print("-" * 75)
    for tx in rows:
        review = "yes" if tx.needs_review else ""
        print(f"{tx.id:<6} {tx.order_id or '-':<22} {tx.status.value:<18} {tx.chat_step:<5} {review:<7} {tx.advertisement_id:<6} {tx.payout_id or '-':<7}")
    print(f"\nTotal: {len(rows)}")


def show_transaction(store, tx_id):
    tx = store.get_transaction(tx_id)
    if tx is None:
        print(f"Transaction not found: {tx_id}")
        sys.exit(1)
    print(f"Transaction {tx.id}: order={tx.order_id} status={tx.status.value} step={tx.chat_step}")
    if tx.failure_reason:
        print(f"Failure: {tx.failure_reason}")
    for msg in store.list_messages(tx.id):
        flag = " " if msg.processed else "*"
        print(f" {flag} [{msg.sender.value}] {msg.content}")


def show_blacklist(store):
    entries = store.list_blacklist()
    if not entries:
        print("Blacklist is empty")
        return
    for entry in entries:
        print(f"{entry.wallet:<24} payout={entry.payout_id or '-':<6} {entry.reason}")


def confirm_payment(store, tx_id):
    tx = store.get_transaction(tx_id)
    if tx is None or tx.status != TransactionStatus.AWAITING_PAYMENT:
        print(f"Transaction {tx_id} is not awaiting payment")
        sys.exit(1)
    store.update_transaction(tx_id, status=TransactionStatus.PAYMENT_CONFIRMED)
    print(f"Transaction {tx_id} marked payment_confirmed; the release task will finish it")


def main():
    parser = argparse.ArgumentParser(description="Transaction ledger CLI")
    parser.add_argument("--db", required=True, help="Path to SQLite database")
    sub = parser.add_subparsers(dest="cmd")

    ls = sub.add_parser("list")
    ls.add_argument("--limit", type=int, default=50)
    show = sub.add_parser("show")
    show.add_argument("transaction_id", type=int)
    sub.add_parser("blacklist")
    confirm = sub.add_parser("confirm-payment")
    confirm.add_argument("transaction_id", type=int)
    sub.add_parser("get-mode")
    set_mode = sub.add_parser("set-mode")
    set_mode.add_argument("mode", choices=[m.value for m in Mode])

    args = parser.parse_args()

    db_path = Path(args.db)
    if not db_path.exists():
        print(f"Database not found: {db_path}")
        sys.exit(1)

    store = SQLiteStore(db_path)
    try:
        if args.cmd == "list":
            list_transactions(store, args.limit)
        elif args.cmd == "show":
            show_transaction(store, args.transaction_id)
        elif args.cmd == "blacklist":
            show_blacklist(store)
        elif args.cmd == "confirm-payment":
            confirm_payment(store, args.transaction_id)
        elif args.cmd == "get-mode":
            print(store.get_setting(MODE_SETTING, Mode.AUTOMATIC.value))
        elif args.cmd == "set-mode":
            store.set_setting(MODE_SETTING, args.mode)
            print(f"Mode set to {args.mode}; takes effect on next start")
        else:
            parser.print_help()
    finally:
        store.close()


if __name__ == "__main__":
    main()
