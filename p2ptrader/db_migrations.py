from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional


def _migration_1(conn):
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS accounts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            account_id TEXT NOT NULL UNIQUE,
            api_key TEXT NOT NULL,
            api_secret TEXT NOT NULL,
            max_ads INTEGER NOT NULL DEFAULT 2,
            is_active INTEGER NOT NULL DEFAULT 1,
            user_id TEXT,
            last_sync_at INTEGER,
            created_at INTEGER
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS advertisements (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            account_id TEXT NOT NULL,
            exchange_ad_id TEXT UNIQUE,
            side TEXT NOT NULL,
            asset TEXT NOT NULL,
            fiat TEXT NOT NULL,
            price TEXT NOT NULL,
            quantity TEXT NOT NULL,
            min_amount TEXT NOT NULL,
            max_amount TEXT NOT NULL,
            payment_method TEXT NOT NULL,
            status TEXT NOT NULL,
            created_at INTEGER,
            updated_at INTEGER
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS payouts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            external_id TEXT NOT NULL UNIQUE,
            amount TEXT NOT NULL,
            wallet TEXT NOT NULL,
            bank TEXT,
            created_at INTEGER
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            advertisement_id INTEGER NOT NULL REFERENCES advertisements(id),
            order_id TEXT UNIQUE,
            payout_id INTEGER REFERENCES payouts(id),
            status TEXT NOT NULL,
            chat_step INTEGER NOT NULL DEFAULT 0,
            owner_user_id TEXT,
            needs_review INTEGER NOT NULL DEFAULT 0,
            failure_reason TEXT,
            created_at INTEGER,
            updated_at INTEGER
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS chat_messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            transaction_id INTEGER NOT NULL REFERENCES transactions(id),
            message_id TEXT NOT NULL,
            sender TEXT NOT NULL,
            content TEXT NOT NULL,
            processed INTEGER NOT NULL DEFAULT 0,
            sent_at INTEGER,
            UNIQUE(transaction_id, message_id)
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS blacklist (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            payout_id INTEGER,
            wallet TEXT NOT NULL,
            reason TEXT NOT NULL,
            created_at INTEGER,
            UNIQUE(payout_id, wallet)
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at INTEGER
        )
        """
    )


def _migration_1_down(conn):
    cur = conn.cursor()
    for table in ("chat_messages", "blacklist", "transactions", "payouts", "advertisements", "accounts", "settings"):
        cur.execute(f"DROP TABLE IF EXISTS {table}")


def _migration_2(conn):
    """Add indices for the active-record queries run on every tick."""
    cur = conn.cursor()
    cur.execute("CREATE INDEX IF NOT EXISTS idx_ads_account_status ON advertisements(account_id, status)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_transactions_status ON transactions(status)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_transactions_ad ON transactions(advertisement_id)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_chat_unprocessed ON chat_messages(processed, sender)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_blacklist_wallet ON blacklist(wallet)")


def _migration_2_down(conn):
    """Drop indices."""
    cur = conn.cursor()
    for index in ("idx_ads_account_status", "idx_transactions_status", "idx_transactions_ad", "idx_chat_unprocessed", "idx_blacklist_wallet"):
        cur.execute(f"DROP INDEX IF EXISTS {index}")


MIGRATIONS: Dict[int, Callable] = {
    1: _migration_1,
    2: _migration_2,
}

# Optional down migrations
MIGRATION_DOWNS: Dict[int, Callable] = {
    1: _migration_1_down,
    2: _migration_2_down,
}


def _ensure_version_table(conn) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    conn.commit()


def applied_versions(conn) -> Dict[int, str]:
    """Return ``{version: applied_at}`` for every applied migration."""
    _ensure_version_table(conn)
    cur = conn.cursor()
    cur.execute("SELECT version, applied_at FROM schema_migrations ORDER BY version")
    return {row[0]: row[1] for row in cur.fetchall()}


def pending_versions(conn) -> List[int]:
    applied = applied_versions(conn)
    return sorted(v for v in MIGRATIONS if v not in applied)


def apply_migrations(conn) -> List[int]:
    """Apply pending migrations to the given sqlite3 connection.

    Returns the list of applied migration versions.
    """
    applied_now = []
    for v in pending_versions(conn):
        # run migration inside transaction
        try:
            conn.execute("BEGIN IMMEDIATE")
            MIGRATIONS[v](conn)
            conn.execute("INSERT INTO schema_migrations(version, applied_at) VALUES(?, ?)", (v, datetime.now(timezone.utc).isoformat()))
            conn.commit()
            applied_now.append(v)
        except Exception:
            conn.rollback()
            raise

    return applied_now


def rollback_migration(conn, version: int) -> None:
    """Rollback a specific migration version if a down migration is registered."""
    if version not in MIGRATION_DOWNS:
        raise RuntimeError(f"No down migration registered for version {version}")

    try:
        conn.execute("BEGIN IMMEDIATE")
        MIGRATION_DOWNS[version](conn)
        conn.execute("DELETE FROM schema_migrations WHERE version = ?", (version,))
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def rollback_last(conn) -> Optional[int]:
    """Rollback the latest applied migration if possible; returns rolled-back version or None."""
    applied = applied_versions(conn)
    if not applied:
        return None
    v = max(applied)
    rollback_migration(conn, v)
    return v
