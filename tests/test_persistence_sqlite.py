from decimal import Decimal
from pathlib import Path

import pytest

from p2ptrader.models import AdStatus, Sender, TransactionStatus
from p2ptrader.persistence_sqlite import SQLiteStore
from p2ptrader.secrets import SecretBox


def make_ad(store, account_id="acc-1", exchange_ad_id="ad-1", price="85.00"):
    ad, _ = store.create_advertisement(
        account_id=account_id,
        exchange_ad_id=exchange_ad_id,
        side="sell",
        asset="USDT",
        fiat="RUB",
        price=Decimal(price),
        quantity=Decimal("122.65"),
        min_amount=Decimal("10000"),
        max_amount=Decimal("10000"),
        payment_method="SBP",
    )
    return ad


def test_account_upsert_and_encryption(tmp_path: Path):
    box = SecretBox(SecretBox.generate_key())
    store = SQLiteStore(tmp_path / "enc.db", secret_box=box)
    store.upsert_account("acc-1", "key", "top-secret")
    raw = store.conn.execute("SELECT api_secret FROM accounts").fetchone()[0]
    assert raw != "top-secret"
    assert store.get_account("acc-1").api_secret == "top-secret"

    store.upsert_account("acc-1", "key2", "rotated", max_ads=3)
    account = store.get_account("acc-1")
    assert account.api_key == "key2"
    assert account.api_secret == "rotated"
    assert account.max_ads == 3
    assert len(store.list_active_accounts()) == 1
    store.close()


def test_deactivated_accounts_are_not_listed(store):
    store.upsert_account("acc-1", "k", "s")
    store.upsert_account("acc-2", "k", "s")
    store.deactivate_account("acc-1")
    assert [a.account_id for a in store.list_active_accounts()] == ["acc-2"]


def test_record_account_sync_keeps_user_id(store):
    store.upsert_account("acc-1", "k", "s")
    store.record_account_sync("acc-1", user_id="u-1")
    store.record_account_sync("acc-1")
    account = store.get_account("acc-1")
    assert account.user_id == "u-1"
    assert account.last_sync_at is not None


def test_advertisement_is_idempotent_by_exchange_id(store):
    first = make_ad(store)
    again, created = store.create_advertisement(
        account_id="acc-1", exchange_ad_id="ad-1", side="sell", asset="USDT", fiat="RUB",
        price=Decimal("90"), quantity=Decimal("1"), min_amount=Decimal("1"), max_amount=Decimal("1"),
        payment_method="Tinkoff",
    )
    assert not created
    assert again.id == first.id
    assert again.price == Decimal("85.00")


def test_active_advertisement_counts(store):
    a = make_ad(store, exchange_ad_id="ad-1")
    make_ad(store, exchange_ad_id="ad-2")
    make_ad(store, account_id="acc-2", exchange_ad_id="ad-3")
    assert store.count_active_advertisements("acc-1") == 2
    store.set_advertisement_status(a.id, AdStatus.DELETED)
    assert store.count_active_advertisements("acc-1") == 1
    assert [ad.exchange_ad_id for ad in store.list_active_advertisements()] == ["ad-2", "ad-3"]
    assert store.get_advertisement_by_exchange_id("ad-1").status == AdStatus.DELETED


def test_order_transaction_is_created_once(store):
    ad = make_ad(store)
    tx1, created1 = store.get_or_create_order_transaction("order-1", advertisement_id=ad.id, status=TransactionStatus.CHAT_STARTED)
    tx2, created2 = store.get_or_create_order_transaction("order-1", advertisement_id=ad.id, status=TransactionStatus.PAYMENT_RECEIVED)
    assert created1 and not created2
    assert tx1.id == tx2.id
    assert tx2.status == TransactionStatus.CHAT_STARTED
    count = store.conn.execute("SELECT COUNT(*) FROM transactions WHERE order_id = 'order-1'").fetchone()[0]
    assert count == 1


def test_attach_order_links_once(store):
    ad = make_ad(store)
    payout, _ = store.upsert_payout("p-1", Decimal("10000"), "+7999")
    tx = store.create_transaction(ad.id, payout_id=payout.id)
    assert store.unlinked_transactions_for_advertisement(ad.id) == [tx]

    owner = store.attach_order(tx.id, "order-1", TransactionStatus.CHAT_STARTED, owner_user_id="self")
    assert owner.id == tx.id
    assert owner.owner_user_id == "self"
    assert store.unlinked_transactions_for_advertisement(ad.id) == []

    # a second order cannot steal an already linked transaction
    assert store.attach_order(tx.id, "order-2", TransactionStatus.CHAT_STARTED) is None
    assert store.get_transaction(tx.id).order_id == "order-1"


def test_attach_order_conflict_returns_existing_owner(store):
    ad = make_ad(store)
    existing, _ = store.get_or_create_order_transaction("order-1", advertisement_id=ad.id, status=TransactionStatus.CHAT_STARTED)
    pending = store.create_transaction(ad.id)
    owner = store.attach_order(pending.id, "order-1", TransactionStatus.CHAT_STARTED)
    assert owner.id == existing.id
    assert store.get_transaction(pending.id).order_id is None


def test_unlinked_excludes_terminal(store):
    ad = make_ad(store)
    tx = store.create_transaction(ad.id)
    store.update_transaction(tx.id, status=TransactionStatus.CANCELLED)
    assert store.unlinked_transactions_for_advertisement(ad.id) == []


def test_update_transaction_fields(store):
    ad = make_ad(store)
    tx = store.create_transaction(ad.id)
    updated = store.update_transaction(tx.id, status=TransactionStatus.BLACKLISTED, chat_step=2, failure_reason="нет", needs_review=True)
    assert updated.status == TransactionStatus.BLACKLISTED
    assert updated.chat_step == 2
    assert updated.failure_reason == "нет"
    assert updated.needs_review
    assert store.list_active_transactions() == []
    assert store.list_transactions_by_status(TransactionStatus.BLACKLISTED)[0].id == tx.id


def test_payouts_without_transaction(store):
    p1, created = store.upsert_payout("p-1", Decimal("10000"), "+7999", "Tinkoff")
    _, again = store.upsert_payout("p-1", Decimal("1"), "other")
    p2, _ = store.upsert_payout("p-2", Decimal("5000"), "+7888")
    assert created and not again
    assert store.get_payout(p1.id).amount == Decimal("10000")
    ad = make_ad(store)
    store.create_transaction(ad.id, payout_id=p1.id)
    assert [p.id for p in store.list_payouts_without_transaction()] == [p2.id]
    assert store.get_transaction_for_payout(p1.id) is not None


def test_message_insert_is_idempotent(store):
    ad = make_ad(store)
    tx = store.create_transaction(ad.id)
    m1, created1 = store.insert_message_if_absent(tx.id, "m-1", Sender.COUNTERPARTY, "да", sent_at=2)
    m2, created2 = store.insert_message_if_absent(tx.id, "m-1", Sender.COUNTERPARTY, "да", sent_at=2)
    store.insert_message_if_absent(tx.id, "m-0", Sender.COUNTERPARTY, "привет", sent_at=1)
    store.insert_message_if_absent(tx.id, "m-2", Sender.SELF, "вопрос", processed=True, sent_at=3)
    assert created1 and not created2
    assert m1.id == m2.id
    assert len(store.list_messages(tx.id)) == 3

    unprocessed = store.list_unprocessed_counterparty_messages()
    assert [m.message_id for m in unprocessed] == ["m-0", "m-1"]
    store.mark_message_processed(unprocessed[0].id)
    assert [m.message_id for m in store.list_unprocessed_counterparty_messages()] == ["m-1"]
    assert store.mark_transaction_messages_processed(tx.id) == 1
    assert store.list_unprocessed_counterparty_messages() == []


def test_blacklist(store):
    payout, _ = store.upsert_payout("p-1", Decimal("10000"), "+7999")
    _, created = store.add_to_blacklist("+7999", "negative answer", payout.id)
    _, again = store.add_to_blacklist("+7999", "negative answer", payout.id)
    _, manual = store.add_to_blacklist("+7000", "manual")
    _, manual_again = store.add_to_blacklist("+7000", "manual")
    assert created and not again
    assert manual and not manual_again
    assert store.is_blacklisted("+7999")
    assert not store.is_blacklisted("+7111")
    assert len(store.list_blacklist()) == 2


def test_settings(store):
    assert store.get_setting("mode") is None
    assert store.get_setting("mode", "automatic") == "automatic"
    store.set_setting("mode", "manual")
    store.set_setting("mode", "automatic")
    assert store.get_setting("mode") == "automatic"


def test_state_survives_reopen(tmp_path: Path):
    path = tmp_path / "ledger.db"
    store = SQLiteStore(path)
    ad = make_ad(store)
    store.get_or_create_order_transaction("order-9", advertisement_id=ad.id, status=TransactionStatus.CHAT_STARTED)
    store.close()

    reopened = SQLiteStore(path)
    assert reopened.get_transaction_by_order_id("order-9") is not None
    assert reopened.list_active_transactions_with_order()[0].order_id == "order-9"
    reopened.close()


def test_encrypted_db_requires_sqlcipher(tmp_path: Path, monkeypatch):
    import builtins

    real_import = builtins.__import__

    def no_sqlcipher(name, *args, **kwargs):
        if name == "sqlcipher3":
            raise ImportError("not installed")
        return real_import(name, *args, **kwargs)

    monkeypatch.setattr(builtins, "__import__", no_sqlcipher)
    with pytest.raises(RuntimeError, match="sqlcipher3 is not installed"):
        SQLiteStore(tmp_path / "enc.db", password="pw")
