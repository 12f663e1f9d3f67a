#!/usr/bin/env python
"""Exchange-side inspection for a configured trading account.

Usage:
    python scripts/p2p_admin.py [--account ID] [--testnet] time
    python scripts/p2p_admin.py orders [--status 10]
    python scripts/p2p_admin.py pending
    python scripts/p2p_admin.py ads
    python scripts/p2p_admin.py cancel-ad <item_id>
    python scripts/p2p_admin.py payment-methods
    python scripts/p2p_admin.py balance [--coin USDT]

Credentials come from P2P_API_KEY/P2P_API_SECRET or the accounts file
(see ``p2ptrader.secrets.load_accounts``).
"""
import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from p2ptrader.config import MAINNET_URL, TESTNET_URL
from p2ptrader.errors import P2PError
from p2ptrader.p2p_client import P2PClient
from p2ptrader.secrets import load_accounts


def pick_account(accounts, account_id):
    if account_id is None:
        return accounts[0]
    for cred in accounts:
        if cred.account_id == account_id:
            return cred
    print(f"Account not configured: {account_id}")
    sys.exit(1)


def print_orders(page):
    print(f"{'Order ID':<22} {'Ad':<22} {'Status':<7} {'Price':<10} {'Amount':<12} {'Counterparty':<14}")
    print("-" * 90)
    for o in page.items:
        print(f"{o.id:<22} {o.item_id or '-':<22} {o.status:<7} {o.price or '-':<10} {o.amount or '-':<12} {o.target_user_id or '-':<14}")
    print(f"\nReported count: {page.count}, listed: {len(page.items)}")


def main():
    parser = argparse.ArgumentParser(description="P2P account admin CLI")
    parser.add_argument("--account", help="Account id from the accounts file")
    parser.add_argument("--accounts-file", help="Path to accounts JSON")
    parser.add_argument("--testnet", action="store_true")
    sub = parser.add_subparsers(dest="cmd")

    sub.add_parser("time")
    orders = sub.add_parser("orders")
    orders.add_argument("--status", type=int)
    sub.add_parser("pending")
    sub.add_parser("ads")
    cancel = sub.add_parser("cancel-ad")
    cancel.add_argument("item_id")
    sub.add_parser("payment-methods")
    balance = sub.add_parser("balance")
    balance.add_argument("--coin", default="USDT")

    args = parser.parse_args()
    if args.cmd is None:
        parser.print_help()
        return

    try:
        cred = pick_account(load_accounts(args.accounts_file), args.account)
    except ValueError as e:
        print(e)
        sys.exit(1)

    client = P2PClient.from_credentials(cred, base_url=TESTNET_URL if args.testnet else MAINNET_URL)
    try:
        if args.cmd == "time":
            server = client.get_server_time()
            print(f"Server time: {server} ms (local offset {client.sync_time()} ms)")
        elif args.cmd == "orders":
            print_orders(client.list_orders(status=args.status))
        elif args.cmd == "pending":
            print_orders(client.list_pending_orders())
        elif args.cmd == "ads":
            for ad in client.list_my_ads():
                print(f"{ad.id:<22} status={ad.status} price={ad.price} qty={ad.quantity} {ad.min_amount}-{ad.max_amount}")
        elif args.cmd == "cancel-ad":
            client.cancel_ad(args.item_id)
            print(f"Advertisement cancelled: {args.item_id}")
        elif args.cmd == "payment-methods":
            for method in client.list_payment_methods():
                state = "online" if method.online != "0" else "offline"
                print(f"{method.id:<10} type={method.payment_type or '-':<5} {method.name:<20} {state}")
        elif args.cmd == "balance":
            print(f"{args.coin}: {client.get_coin_balance(args.coin)}")
    except P2PError as e:
        print(f"Exchange error [{e.code}]: {e.message}")
        sys.exit(2)
    finally:
        client.close()


if __name__ == "__main__":
    main()
