import sqlite3
from contextlib import contextmanager
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .db_migrations import apply_migrations
from .logging_setup import logger
from .models import (
    TERMINAL_STATUSES,
    AdStatus,
    Advertisement,
    BlacklistEntry,
    ChatMessage,
    Payout,
    Sender,
    TradingAccount,
    Transaction,
    TransactionStatus,
)
from .secrets import SecretBox

_NOW = "strftime('%s','now')"
_TERMINAL = tuple(s.value for s in TERMINAL_STATUSES)
_TERMINAL_SQL = ",".join("?" for _ in _TERMINAL)


def _connect(path: str, password: Optional[str], timeout: int):
    """Open a plain or sqlcipher-encrypted connection in autocommit mode."""
    if not password:
        return sqlite3, sqlite3.connect(path, timeout=timeout, check_same_thread=False, isolation_level=None)
    try:
        import sqlcipher3 as driver  # type: ignore
    except ImportError:
        raise RuntimeError(
            "sqlcipher3 is not installed. Install with: pip install p2p-trader[encryption]\n"
            "Or leave persistence.encryption_password empty for an unencrypted database."
        )
    conn = driver.connect(path, timeout=timeout, check_same_thread=False, isolation_level=None)
    conn.execute("PRAGMA key = '{}'".format(password.replace("'", "''")))
    conn.execute("PRAGMA cipher_page_size = 4096")
    try:
        conn.execute("SELECT name FROM sqlite_master LIMIT 1")
    except driver.DatabaseError as e:
        raise RuntimeError(f"Failed to open encrypted database (wrong password?): {e}")
    return driver, conn


class SQLiteStore:
    """SQLite-backed ledger for accounts, ads, payouts, transactions and chat.

    Every get-or-create goes through :meth:`_insert_if_absent`, which relies
    on the natural-key UNIQUE constraints of the schema: concurrent callers
    racing to create the same record all end up with the single stored row.

    Methods are synchronous and never await, so a call runs to completion
    without interleaving with other tasks on the event loop.
    """

    def __init__(self, path: Path, *, password: Optional[str] = None, secret_box: Optional[SecretBox] = None, timeout: int = 30):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._driver, self.conn = _connect(str(self.path), password, timeout)
        self.conn.row_factory = self._driver.Row
        self.secret_box = secret_box
        apply_migrations(self.conn)

    @contextmanager
    def _transaction(self) -> Iterator[Any]:
        cur = self.conn.cursor()
        cur.execute("BEGIN IMMEDIATE")
        try:
            yield cur
        except Exception:
            self.conn.rollback()
            raise
        self.conn.commit()

    def _fetchone(self, sql: str, params: Tuple = ()) -> Optional[Any]:
        return self.conn.execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params: Tuple = ()) -> List[Any]:
        return self.conn.execute(sql, params).fetchall()

    def _insert_if_absent(self, table: str, key: Dict[str, Any], values: Dict[str, Any], *, timestamps: Tuple[str, ...] = ("created_at",)) -> Tuple[Any, bool]:
        """Insert a row unless one with the same natural key exists.

        Returns ``(row, created)``; on conflict the existing row is re-read
        and returned with ``created=False``.
        """
        data = {**values, **key}
        columns = list(data) + list(timestamps)
        placeholders = ["?"] * len(data) + [_NOW] * len(timestamps)
        with self._transaction() as cur:
            cur.execute(
                f"INSERT OR IGNORE INTO {table}({', '.join(columns)}) VALUES({', '.join(placeholders)})",
                tuple(data.values()),
            )
            created = cur.rowcount == 1
        where = " AND ".join(f"{k} IS ?" for k in key)
        row = self._fetchone(f"SELECT * FROM {table} WHERE {where}", tuple(key.values()))
        return row, created

    # --- Accounts ---
    def _account(self, row) -> TradingAccount:
        account = TradingAccount.from_row(row)
        if self.secret_box is not None:
            account.api_secret = self.secret_box.decrypt(account.api_secret)
        return account

    def upsert_account(self, account_id: str, api_key: str, api_secret: str, max_ads: int = 2) -> TradingAccount:
        stored_secret = self.secret_box.encrypt(api_secret) if self.secret_box is not None else api_secret
        row, created = self._insert_if_absent(
            "accounts",
            {"account_id": account_id},
            {"api_key": api_key, "api_secret": stored_secret, "max_ads": max_ads},
        )
        if not created:
            with self._transaction() as cur:
                cur.execute(
                    "UPDATE accounts SET api_key = ?, api_secret = ?, max_ads = ?, is_active = 1 WHERE account_id = ?",
                    (api_key, stored_secret, max_ads, account_id),
                )
            row = self._fetchone("SELECT * FROM accounts WHERE account_id = ?", (account_id,))
        return self._account(row)

    def get_account(self, account_id: str) -> Optional[TradingAccount]:
        row = self._fetchone("SELECT * FROM accounts WHERE account_id = ?", (account_id,))
        return self._account(row) if row else None

    def list_active_accounts(self) -> List[TradingAccount]:
        return [self._account(r) for r in self._fetchall("SELECT * FROM accounts WHERE is_active = 1 ORDER BY id")]

    def record_account_sync(self, account_id: str, user_id: Optional[str] = None) -> None:
        with self._transaction() as cur:
            cur.execute(
                f"UPDATE accounts SET last_sync_at = {_NOW}, user_id = COALESCE(?, user_id) WHERE account_id = ?",
                (user_id, account_id),
            )

    def deactivate_account(self, account_id: str) -> None:
        with self._transaction() as cur:
            cur.execute("UPDATE accounts SET is_active = 0 WHERE account_id = ?", (account_id,))

    # --- Advertisements ---
    def create_advertisement(
        self,
        *,
        account_id: str,
        exchange_ad_id: Optional[str],
        side: str,
        asset: str,
        fiat: str,
        price: Decimal,
        quantity: Decimal,
        min_amount: Decimal,
        max_amount: Decimal,
        payment_method: str,
        status: AdStatus = AdStatus.ONLINE,
    ) -> Tuple[Advertisement, bool]:
        values = {
            "account_id": account_id,
            "side": side,
            "asset": asset,
            "fiat": fiat,
            "price": str(price),
            "quantity": str(quantity),
            "min_amount": str(min_amount),
            "max_amount": str(max_amount),
            "payment_method": payment_method,
            "status": status.value,
        }
        if exchange_ad_id is None:
            with self._transaction() as cur:
                cur.execute(
                    f"INSERT INTO advertisements({', '.join(values)}, created_at) VALUES({', '.join('?' * len(values))}, {_NOW})",
                    tuple(values.values()),
                )
                ad_id = cur.lastrowid
            return self.get_advertisement(ad_id), True
        row, created = self._insert_if_absent("advertisements", {"exchange_ad_id": exchange_ad_id}, values)
        return Advertisement.from_row(row), created

    def get_advertisement(self, ad_id: int) -> Optional[Advertisement]:
        row = self._fetchone("SELECT * FROM advertisements WHERE id = ?", (ad_id,))
        return Advertisement.from_row(row) if row else None

    def get_advertisement_by_exchange_id(self, exchange_ad_id: str) -> Optional[Advertisement]:
        row = self._fetchone("SELECT * FROM advertisements WHERE exchange_ad_id = ?", (exchange_ad_id,))
        return Advertisement.from_row(row) if row else None

    def list_active_advertisements(self, account_id: Optional[str] = None) -> List[Advertisement]:
        if account_id is None:
            rows = self._fetchall("SELECT * FROM advertisements WHERE status = ? ORDER BY id", (AdStatus.ONLINE.value,))
        else:
            rows = self._fetchall(
                "SELECT * FROM advertisements WHERE status = ? AND account_id = ? ORDER BY id",
                (AdStatus.ONLINE.value, account_id),
            )
        return [Advertisement.from_row(r) for r in rows]

    def count_active_advertisements(self, account_id: str) -> int:
        row = self._fetchone(
            "SELECT COUNT(*) FROM advertisements WHERE status = ? AND account_id = ?",
            (AdStatus.ONLINE.value, account_id),
        )
        return int(row[0])

    def set_advertisement_status(self, ad_id: int, status: AdStatus) -> None:
        with self._transaction() as cur:
            cur.execute(
                f"UPDATE advertisements SET status = ?, updated_at = {_NOW} WHERE id = ?",
                (status.value, ad_id),
            )

    # --- Payouts ---
    def upsert_payout(self, external_id: str, amount: Decimal, wallet: str, bank: Optional[str] = None) -> Tuple[Payout, bool]:
        row, created = self._insert_if_absent(
            "payouts",
            {"external_id": external_id},
            {"amount": str(amount), "wallet": wallet, "bank": bank},
        )
        return Payout.from_row(row), created

    def delete_payout(self, payout_id: int) -> bool:
        """Remove a payout no transaction refers to yet; returns whether it was removed."""
        with self._transaction() as cur:
            cur.execute(
                "DELETE FROM payouts WHERE id = ? AND NOT EXISTS (SELECT 1 FROM transactions WHERE payout_id = ?)",
                (payout_id, payout_id),
            )
            return cur.rowcount == 1

    def get_payout(self, payout_id: int) -> Optional[Payout]:
        row = self._fetchone("SELECT * FROM payouts WHERE id = ?", (payout_id,))
        return Payout.from_row(row) if row else None

    def get_payout_by_external_id(self, external_id: str) -> Optional[Payout]:
        row = self._fetchone("SELECT * FROM payouts WHERE external_id = ?", (external_id,))
        return Payout.from_row(row) if row else None

    def list_payouts_without_transaction(self) -> List[Payout]:
        rows = self._fetchall(
            "SELECT p.* FROM payouts p LEFT JOIN transactions t ON t.payout_id = p.id "
            "WHERE t.id IS NULL ORDER BY p.id"
        )
        return [Payout.from_row(r) for r in rows]

    # --- Transactions ---
    def create_transaction(
        self,
        advertisement_id: int,
        *,
        payout_id: Optional[int] = None,
        status: TransactionStatus = TransactionStatus.PENDING,
    ) -> Transaction:
        """Create an order-less transaction for a freshly posted advertisement."""
        with self._transaction() as cur:
            cur.execute(
                f"INSERT INTO transactions(advertisement_id, payout_id, status, created_at, updated_at) VALUES(?, ?, ?, {_NOW}, {_NOW})",
                (advertisement_id, payout_id, status.value),
            )
            tx_id = cur.lastrowid
        return self.get_transaction(tx_id)

    def get_or_create_order_transaction(
        self,
        order_id: str,
        *,
        advertisement_id: int,
        status: TransactionStatus,
        owner_user_id: Optional[str] = None,
        needs_review: bool = False,
    ) -> Tuple[Transaction, bool]:
        """Return the transaction owning ``order_id``, creating it if absent."""
        row, created = self._insert_if_absent(
            "transactions",
            {"order_id": order_id},
            {
                "advertisement_id": advertisement_id,
                "status": status.value,
                "owner_user_id": owner_user_id,
                "needs_review": int(needs_review),
            },
            timestamps=("created_at", "updated_at"),
        )
        return Transaction.from_row(row), created

    def get_transaction(self, transaction_id: int) -> Optional[Transaction]:
        row = self._fetchone("SELECT * FROM transactions WHERE id = ?", (transaction_id,))
        return Transaction.from_row(row) if row else None

    def get_transaction_by_order_id(self, order_id: str) -> Optional[Transaction]:
        row = self._fetchone("SELECT * FROM transactions WHERE order_id = ?", (order_id,))
        return Transaction.from_row(row) if row else None

    def get_transaction_for_payout(self, payout_id: int) -> Optional[Transaction]:
        row = self._fetchone("SELECT * FROM transactions WHERE payout_id = ? ORDER BY id DESC LIMIT 1", (payout_id,))
        return Transaction.from_row(row) if row else None

    def unlinked_transactions_for_advertisement(self, advertisement_id: int) -> List[Transaction]:
        rows = self._fetchall(
            f"SELECT * FROM transactions WHERE advertisement_id = ? AND order_id IS NULL "
            f"AND status NOT IN ({_TERMINAL_SQL}) ORDER BY id",
            (advertisement_id, *_TERMINAL),
        )
        return [Transaction.from_row(r) for r in rows]

    def attach_order(self, transaction_id: int, order_id: str, status: TransactionStatus, owner_user_id: Optional[str] = None) -> Optional[Transaction]:
        """Link ``order_id`` to an unlinked transaction.

        The update only applies while the transaction has no order; a
        uniqueness conflict means another transaction already owns the order.
        Either way the current owner of ``order_id`` (or None) is returned.
        """
        try:
            with self._transaction() as cur:
                cur.execute(
                    f"UPDATE transactions SET order_id = ?, status = ?, owner_user_id = COALESCE(?, owner_user_id), "
                    f"updated_at = {_NOW} WHERE id = ? AND order_id IS NULL",
                    (order_id, status.value, owner_user_id, transaction_id),
                )
        except self._driver.IntegrityError:
            logger.warning(f"Order already linked elsewhere | order_id={order_id} transaction_id={transaction_id}")
        return self.get_transaction_by_order_id(order_id)

    def update_transaction(
        self,
        transaction_id: int,
        *,
        status: Optional[TransactionStatus] = None,
        chat_step: Optional[int] = None,
        failure_reason: Optional[str] = None,
        needs_review: Optional[bool] = None,
    ) -> Transaction:
        sets = []
        params: List[Any] = []
        if status is not None:
            sets.append("status = ?")
            params.append(status.value)
        if chat_step is not None:
            sets.append("chat_step = ?")
            params.append(chat_step)
        if failure_reason is not None:
            sets.append("failure_reason = ?")
            params.append(failure_reason)
        if needs_review is not None:
            sets.append("needs_review = ?")
            params.append(int(needs_review))
        if sets:
            with self._transaction() as cur:
                cur.execute(
                    f"UPDATE transactions SET {', '.join(sets)}, updated_at = {_NOW} WHERE id = ?",
                    (*params, transaction_id),
                )
        return self.get_transaction(transaction_id)

    def list_active_transactions(self) -> List[Transaction]:
        rows = self._fetchall(f"SELECT * FROM transactions WHERE status NOT IN ({_TERMINAL_SQL}) ORDER BY id", _TERMINAL)
        return [Transaction.from_row(r) for r in rows]

    def list_active_transactions_with_order(self) -> List[Transaction]:
        rows = self._fetchall(
            f"SELECT * FROM transactions WHERE order_id IS NOT NULL AND status NOT IN ({_TERMINAL_SQL}) ORDER BY id",
            _TERMINAL,
        )
        return [Transaction.from_row(r) for r in rows]

    def list_transactions_by_status(self, status: TransactionStatus) -> List[Transaction]:
        rows = self._fetchall("SELECT * FROM transactions WHERE status = ? ORDER BY id", (status.value,))
        return [Transaction.from_row(r) for r in rows]

    def list_transactions(self, limit: int = 100) -> List[Transaction]:
        rows = self._fetchall("SELECT * FROM transactions ORDER BY id DESC LIMIT ?", (limit,))
        return [Transaction.from_row(r) for r in rows]

    # --- Chat messages ---
    def insert_message_if_absent(
        self,
        transaction_id: int,
        message_id: str,
        sender: Sender,
        content: str,
        *,
        processed: bool = False,
        sent_at: Optional[int] = None,
    ) -> Tuple[ChatMessage, bool]:
        row, created = self._insert_if_absent(
            "chat_messages",
            {"transaction_id": transaction_id, "message_id": message_id},
            {"sender": sender.value, "content": content, "processed": int(processed), "sent_at": sent_at},
            timestamps=(),
        )
        return ChatMessage.from_row(row), created

    def list_unprocessed_counterparty_messages(self) -> List[ChatMessage]:
        rows = self._fetchall(
            "SELECT * FROM chat_messages WHERE processed = 0 AND sender = ? ORDER BY transaction_id, sent_at, id",
            (Sender.COUNTERPARTY.value,),
        )
        return [ChatMessage.from_row(r) for r in rows]

    def mark_message_processed(self, message_pk: int) -> None:
        with self._transaction() as cur:
            cur.execute("UPDATE chat_messages SET processed = 1 WHERE id = ?", (message_pk,))

    def mark_transaction_messages_processed(self, transaction_id: int) -> int:
        with self._transaction() as cur:
            cur.execute("UPDATE chat_messages SET processed = 1 WHERE transaction_id = ? AND processed = 0", (transaction_id,))
            return cur.rowcount

    def list_messages(self, transaction_id: int) -> List[ChatMessage]:
        rows = self._fetchall(
            "SELECT * FROM chat_messages WHERE transaction_id = ? ORDER BY sent_at, id",
            (transaction_id,),
        )
        return [ChatMessage.from_row(r) for r in rows]

    # --- Blacklist ---
    def add_to_blacklist(self, wallet: str, reason: str, payout_id: Optional[int] = None) -> Tuple[BlacklistEntry, bool]:
        if payout_id is None:
            # NULL keys never conflict under UNIQUE, so match on wallet alone
            existing = self._fetchone("SELECT * FROM blacklist WHERE payout_id IS NULL AND wallet = ?", (wallet,))
            if existing is not None:
                return BlacklistEntry.from_row(existing), False
        row, created = self._insert_if_absent(
            "blacklist",
            {"payout_id": payout_id, "wallet": wallet},
            {"reason": reason},
        )
        return BlacklistEntry.from_row(row), created

    def is_blacklisted(self, wallet: str) -> bool:
        return self._fetchone("SELECT 1 FROM blacklist WHERE wallet = ? LIMIT 1", (wallet,)) is not None

    def list_blacklist(self) -> List[BlacklistEntry]:
        return [BlacklistEntry.from_row(r) for r in self._fetchall("SELECT * FROM blacklist ORDER BY id")]

    # --- Settings ---
    def get_setting(self, key: str, default: Optional[str] = None) -> Optional[str]:
        row = self._fetchone("SELECT value FROM settings WHERE key = ?", (key,))
        return row[0] if row else default

    def set_setting(self, key: str, value: str) -> None:
        with self._transaction() as cur:
            cur.execute(
                f"INSERT OR REPLACE INTO settings(key, value, updated_at) VALUES(?, ?, {_NOW})",
                (key, value),
            )

    def close(self) -> None:
        self.conn.close()
