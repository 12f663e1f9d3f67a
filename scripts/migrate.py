#!/usr/bin/env python
"""Schema migration CLI for the p2ptrader ledger.

Usage:
    python scripts/migrate.py --db p2ptrader.db list
    python scripts/migrate.py --db p2ptrader.db apply [--dry-run]
    python scripts/migrate.py --db p2ptrader.db rollback --version 2 --yes
    python scripts/migrate.py --db p2ptrader.db rollback --last --yes
"""
import argparse
import sqlite3
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from p2ptrader.db_migrations import (
    MIGRATIONS,
    applied_versions,
    apply_migrations,
    pending_versions,
    rollback_last,
    rollback_migration,
)


def list_migrations(conn):
    applied = applied_versions(conn)
    print("Available migrations:")
    for v in sorted(MIGRATIONS):
        status = "applied" if v in applied else "pending"
        print(f"  {v}: {status} (applied_at={applied.get(v, '-')})")


def confirmed(prompt: str, assume_yes: bool) -> bool:
    if assume_yes:
        return True
    try:
        answer = input(f"{prompt} This may DROP data. Type 'yes' to continue: ")
    except EOFError:
        print("No confirmation on stdin; pass --yes to roll back non-interactively.")
        return False
    return answer.strip().lower() == "yes"


def main():
    parser = argparse.ArgumentParser(description="Ledger schema migrations")
    parser.add_argument("--db", required=True, help="Path to sqlite DB file")
    sub = parser.add_subparsers(dest="cmd")

    sub.add_parser("list")
    apply_p = sub.add_parser("apply")
    apply_p.add_argument("--dry-run", action="store_true", help="Show pending migrations without applying them")

    rb = sub.add_parser("rollback")
    target = rb.add_mutually_exclusive_group(required=True)
    target.add_argument("--version", type=int, help="Rollback a specific migration version")
    target.add_argument("--last", action="store_true", help="Rollback the last applied migration")
    rb.add_argument("--dry-run", action="store_true", help="Show the migration that would be rolled back")
    rb.add_argument("--yes", action="store_true", help="Do not prompt for confirmation")

    args = parser.parse_args()
    if args.cmd is None:
        parser.print_help()
        return

    db = Path(args.db)
    db.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db), timeout=30)
    try:
        if args.cmd == "list":
            list_migrations(conn)
        elif args.cmd == "apply":
            if args.dry_run:
                pending = pending_versions(conn)
                print(f"Pending migrations: {pending}" if pending else "No pending migrations; database up-to-date.")
                return
            applied = apply_migrations(conn)
            print(f"Applied migrations: {applied}" if applied else "No migrations applied; database up-to-date.")
        elif args.cmd == "rollback":
            version = args.version
            if args.last:
                applied = applied_versions(conn)
                if not applied:
                    print("No applied migrations to rollback")
                    return
                version = max(applied)
            if args.dry_run:
                print(f"Would rollback migration {version} (dry-run)")
                return
            if not confirmed(f"Roll back migration {version}?", args.yes):
                print("Aborted.")
                return
            if args.last:
                rollback_last(conn)
            else:
                rollback_migration(conn, version)
            print(f"Rolled back migration {version}")
    finally:
        conn.close()


if __name__ == "__main__":
    main()
