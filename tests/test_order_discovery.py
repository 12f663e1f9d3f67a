import asyncio
from decimal import Decimal

import pytest

from conftest import add_local_ad
from p2ptrader.errors import TransientNetworkError
from p2ptrader.events import EventBus, OrderLinked, OrderSynthesized
from p2ptrader.models import AdStatus, OrderStatus, TransactionStatus
from p2ptrader.order_discovery import OrderReconciler


async def setup(make_pool, store, exchanges, *, events=None):
    pool = await make_pool("acc-1")
    ex = exchanges["acc-1"]
    item_id = await ex.create_ad({"tokenId": "USDT", "currencyId": "RUB", "price": "85.00"})
    ad = add_local_ad(store, "acc-1", item_id)
    payout, _ = store.upsert_payout("p-1", Decimal("10000"), "+7999")
    tx = store.create_transaction(ad.id, payout_id=payout.id)
    return pool, ex, ad, tx, OrderReconciler(store, pool, events=events)


@pytest.mark.asyncio
async def test_order_links_to_waiting_transaction(make_pool, store, exchanges):
    events = EventBus()
    seen = []
    events.subscribe(OrderLinked, seen.append)
    pool, ex, ad, tx, reconciler = await setup(make_pool, store, exchanges, events=events)
    order_id = ex.add_order(ad.exchange_ad_id)

    assert await reconciler.discover_all() == 1
    linked = store.get_transaction(tx.id)
    assert linked.order_id == order_id
    assert linked.status == TransactionStatus.CHAT_STARTED
    assert linked.owner_user_id == "user-acc-1"
    assert store.get_advertisement(ad.id).status == AdStatus.DELETED
    assert ad.exchange_ad_id not in ex.ads
    assert seen == [OrderLinked(order_id=order_id, transaction_id=tx.id, account_id="acc-1")]


@pytest.mark.asyncio
async def test_paid_order_maps_to_payment_received(make_pool, store, exchanges):
    pool, ex, ad, tx, reconciler = await setup(make_pool, store, exchanges)
    ex.add_order(ad.exchange_ad_id, status=OrderStatus.AWAITING_RELEASE)
    await reconciler.discover_all()
    assert store.get_transaction(tx.id).status == TransactionStatus.PAYMENT_RECEIVED


@pytest.mark.asyncio
async def test_repeated_discovery_is_idempotent(make_pool, store, exchanges):
    pool, ex, ad, tx, reconciler = await setup(make_pool, store, exchanges)
    ex.add_order(ad.exchange_ad_id)
    assert await reconciler.discover_all() == 1
    assert await reconciler.discover_all() == 0
    assert len(store.list_transactions()) == 1


@pytest.mark.asyncio
async def test_concurrent_discovery_yields_one_transaction(make_pool, store, exchanges):
    pool, ex, ad, tx, reconciler = await setup(make_pool, store, exchanges)
    order_id = ex.add_order(ad.exchange_ad_id)
    other = OrderReconciler(store, pool)

    results = await asyncio.gather(reconciler.discover_all(), other.discover_all(), reconciler.discover_all())
    assert sum(results) == 1
    rows = store.conn.execute("SELECT COUNT(*) FROM transactions WHERE order_id = ?", (order_id,)).fetchone()[0]
    assert rows == 1


@pytest.mark.asyncio
async def test_unknown_order_is_synthesized_for_review(make_pool, store, exchanges):
    events = EventBus()
    seen = []
    events.subscribe(OrderSynthesized, seen.append)
    pool = await make_pool("acc-1")
    ex = exchanges["acc-1"]
    order_id = ex.add_order("foreign-ad", amount="7000")

    assert await OrderReconciler(store, pool, events=events).discover_all() == 1
    tx = store.get_transaction_by_order_id(order_id)
    assert tx.needs_review
    assert tx.payout_id is None
    ad = store.get_advertisement(tx.advertisement_id)
    assert ad.exchange_ad_id == "foreign-ad"
    assert ad.status == AdStatus.DELETED
    assert ad.max_amount == Decimal("7000")
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_second_order_on_linked_ad_is_synthesized(make_pool, store, exchanges):
    pool, ex, ad, tx, reconciler = await setup(make_pool, store, exchanges)
    first = ex.add_order(ad.exchange_ad_id)
    await reconciler.discover_all()
    second = ex.add_order(ad.exchange_ad_id, counterparty="buyer-2")
    await reconciler.discover_all()

    assert store.get_transaction_by_order_id(first).id == tx.id
    synthesized = store.get_transaction_by_order_id(second)
    assert synthesized.id != tx.id
    assert synthesized.advertisement_id == ad.id
    assert synthesized.needs_review


@pytest.mark.asyncio
async def test_multiple_unlinked_transactions_are_left_alone(make_pool, store, exchanges):
    pool, ex, ad, tx, reconciler = await setup(make_pool, store, exchanges)
    store.create_transaction(ad.id)
    order_id = ex.add_order(ad.exchange_ad_id)
    assert await reconciler.discover_all() == 0
    assert store.get_transaction_by_order_id(order_id) is None


@pytest.mark.asyncio
async def test_pending_count_without_items_falls_back_to_status_query(make_pool, store, exchanges):
    pool, ex, ad, tx, reconciler = await setup(make_pool, store, exchanges)
    ex.add_order(ad.exchange_ad_id)
    ex.pending_count_mismatch = True
    for _ in range(3):
        ex.add_order("old-ad", status=OrderStatus.COMPLETED)

    orders = await reconciler.fetch_active_orders(pool.get("acc-1"))
    assert [o.item_id for o in orders] == [ad.exchange_ad_id]
    # one unfiltered page plus the status-filtered fallback
    assert ex.calls.count("list_orders") == 2
    assert ex.calls.count("list_pending_orders") == 1


@pytest.mark.asyncio
async def test_orders_beyond_first_page_are_discovered(make_pool, store, exchanges):
    pool = await make_pool("acc-1")
    ex = exchanges["acc-1"]
    order_ids = [ex.add_order(f"ad-{i}") for i in range(5)]
    ex.add_order("ad-old", status=OrderStatus.COMPLETED)
    reconciler = OrderReconciler(store, pool, page_size=2)

    orders = await reconciler.fetch_active_orders(pool.get("acc-1"))
    assert sorted(o.id for o in orders) == sorted(order_ids)
    assert ex.calls.count("list_orders") == 3
    assert ex.calls.count("list_pending_orders") == 3

    assert await reconciler.discover_all() == 5
    assert all(store.get_transaction_by_order_id(o) is not None for o in order_ids)


@pytest.mark.asyncio
async def test_inactive_orders_are_ignored(make_pool, store, exchanges):
    pool, ex, ad, tx, reconciler = await setup(make_pool, store, exchanges)
    ex.add_order(ad.exchange_ad_id, status=OrderStatus.CANCELLED)
    assert await reconciler.discover_all() == 0
    assert store.get_transaction(tx.id).order_id is None


@pytest.mark.asyncio
async def test_account_failure_does_not_stop_other_accounts(make_pool, store, exchanges):
    pool = await make_pool("acc-1", "acc-2")
    exchanges["acc-1"].failures["list_orders"] = TransientNetworkError("timeout")
    order_id = exchanges["acc-2"].add_order("foreign")
    assert await OrderReconciler(store, pool).discover_all() == 1
    assert store.get_transaction_by_order_id(order_id) is not None


@pytest.mark.asyncio
async def test_restart_resumes_tracking_from_ledger(make_pool, store, exchanges):
    pool, ex, ad, tx, reconciler = await setup(make_pool, store, exchanges)
    order_id = ex.add_order(ad.exchange_ad_id)
    await reconciler.discover_all()

    fresh = OrderReconciler(store, pool)
    ex.set_order_status(order_id, OrderStatus.CANCELLED)
    assert await fresh.refresh_tracked() == 1
    assert store.get_transaction(tx.id).status == TransactionStatus.CANCELLED


@pytest.mark.asyncio
async def test_refresh_tracked_completion_and_dispute(make_pool, store, exchanges):
    pool, ex, ad, tx, reconciler = await setup(make_pool, store, exchanges)
    disputed = ex.add_order(ad.exchange_ad_id)
    done = ex.add_order("ad-elsewhere")
    await reconciler.discover_all()
    ex.set_order_status(done, OrderStatus.COMPLETED)
    ex.set_order_status(disputed, OrderStatus.DISPUTED)

    assert await reconciler.refresh_tracked() == 1
    assert store.get_transaction_by_order_id(done).status == TransactionStatus.COMPLETED
    flagged = store.get_transaction(tx.id)
    assert flagged.needs_review
    assert flagged.failure_reason == "order disputed"
    assert flagged.status == TransactionStatus.CHAT_STARTED
