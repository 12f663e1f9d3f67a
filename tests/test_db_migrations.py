import sqlite3
from pathlib import Path

from p2ptrader.db_migrations import MIGRATIONS, applied_versions, apply_migrations, pending_versions, rollback_last, rollback_migration
from p2ptrader.persistence_sqlite import SQLiteStore


def tables(conn):
    return {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}


def indices(conn):
    return {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type = 'index' AND name LIKE 'idx_%'")}


def test_store_applies_all_migrations(tmp_path: Path):
    store = SQLiteStore(tmp_path / "migs.db")
    assert set(applied_versions(store.conn)) == set(MIGRATIONS)
    assert apply_migrations(store.conn) == []
    assert {"accounts", "advertisements", "payouts", "transactions", "chat_messages", "blacklist", "settings"} <= tables(store.conn)
    store.close()


def test_pending_then_applied(tmp_path: Path):
    conn = sqlite3.connect(str(tmp_path / "fresh.db"))
    assert pending_versions(conn) == sorted(MIGRATIONS)
    assert apply_migrations(conn) == sorted(MIGRATIONS)
    assert pending_versions(conn) == []
    conn.close()


def test_rollback_chain(tmp_path: Path):
    conn = sqlite3.connect(str(tmp_path / "chain.db"))
    apply_migrations(conn)
    assert "idx_transactions_status" in indices(conn)

    assert rollback_last(conn) == 2
    assert indices(conn) == set()
    assert "transactions" in tables(conn)

    rollback_migration(conn, 1)
    assert "transactions" not in tables(conn)
    assert rollback_last(conn) is None

    assert apply_migrations(conn) == [1, 2]
    conn.close()
