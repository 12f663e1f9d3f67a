"""Payout to payment details through the wired application."""
import asyncio
import random
from decimal import Decimal

import pytest

from p2ptrader.app import MODE_SETTING, TraderApp
from p2ptrader.config import TraderConfig
from p2ptrader.conversation import DEFAULT_STEPS
from p2ptrader.exchange import InMemoryExchange
from p2ptrader.models import OrderStatus, TransactionStatus
from p2ptrader.orchestrator import Mode
from p2ptrader.payouts import InMemoryPayoutSource, PayoutRecord
from p2ptrader.secrets import AccountCredentials


def build_app(tmp_path, exchanges, payouts=None, **config):
    cfg = TraderConfig.from_dict({
        "persistence": {"db_path": str(tmp_path / "trader.db")},
        "conversation": {"receipt_email": "receipts@example.com"},
        **config,
    })

    def factory(account_id, api_key, api_secret):
        return exchanges.setdefault(account_id, InMemoryExchange(user_id=f"user-{account_id}"))

    app = TraderApp(cfg, client_factory=factory, payout_source=payouts, rng=random.Random(7))
    app.register_accounts([AccountCredentials("acc-1", "k1", "s1"), AccountCredentials("acc-2", "k2", "s2")])
    return app


async def teardown(app):
    await app.clock.stop()
    await app.pool.close()
    app.store.close()


@pytest.mark.asyncio
async def test_payout_to_payment_details(tmp_path):
    exchanges = {}
    payouts = InMemoryPayoutSource([
        PayoutRecord("p-1", Decimal("10000"), "+79990001122", "Тинькофф"),
        PayoutRecord("p-2", Decimal("20000"), "+79990003344", "Сбер"),
    ])
    app = build_app(tmp_path, exchanges, payouts)
    await app.initialize()
    try:
        assert await app.intake.intake() == 2
        assert await app.ads.create_pending() == 2

        # least-loaded placement spreads the two ads across both accounts
        assert len(exchanges["acc-1"].ads) == 1
        assert len(exchanges["acc-2"].ads) == 1
        prices = [Decimal(ad["price"]) for ex in exchanges.values() for ad in ex.ads.values()]
        assert abs(prices[0] - prices[1]) / min(prices) * 100 >= 5

        ex = exchanges["acc-1"]
        item_id = next(iter(ex.ads))
        order_id = ex.add_order(item_id)
        await app._discover()
        tx = app.store.get_transaction_by_order_id(order_id)
        assert tx.payout_id == app.store.get_payout_by_external_id("p-1").id
        assert tx.status == TransactionStatus.CHAT_STARTED
        assert item_id not in ex.ads

        await app._converse()
        for answer in ("Да", "да, смогу", "подтверждаю"):
            ex.add_counterparty_message(order_id, answer)
            await app.chat.sync_all()
            await app._converse()

        sent = ex.sent_messages(order_id)
        assert sent[:3] == [s.prompt for s in DEFAULT_STEPS]
        assert "+79990001122" in sent[3]
        assert "receipts@example.com" in sent[3]
        tx = app.store.get_transaction(tx.id)
        assert tx.status == TransactionStatus.AWAITING_PAYMENT
        assert tx.chat_step == 3

        app.release.confirm_payment(tx.id)
        assert await app.release.release_confirmed() == 1
        assert ex.orders[order_id]["status"] == OrderStatus.COMPLETED
        assert app.store.get_transaction(tx.id).status == TransactionStatus.COMPLETED
    finally:
        await teardown(app)


@pytest.mark.asyncio
async def test_unknown_order_is_synthesized_for_review(tmp_path):
    exchanges = {}
    app = build_app(tmp_path, exchanges)
    await app.initialize()
    try:
        order_id = exchanges["acc-2"].add_order("ad-from-elsewhere", amount="5000")
        await app._discover()
        tx = app.store.get_transaction_by_order_id(order_id)
        assert tx.needs_review
        assert tx.payout_id is None
        assert app.store.get_advertisement(tx.advertisement_id).account_id == "acc-2"
    finally:
        await teardown(app)


@pytest.mark.asyncio
async def test_mode_survives_restart(tmp_path):
    exchanges = {}
    app = build_app(tmp_path, exchanges)
    app.set_mode(Mode.MANUAL)
    assert app.store.get_setting(MODE_SETTING) == "manual"
    app.store.close()

    restarted = build_app(tmp_path, exchanges)
    assert restarted.gate.mode == Mode.AUTOMATIC
    await restarted.initialize()
    try:
        assert restarted.gate.mode == Mode.MANUAL
    finally:
        await teardown(restarted)


@pytest.mark.asyncio
async def test_orchestrated_run_starts_and_shuts_down(tmp_path):
    exchanges = {}
    payouts = InMemoryPayoutSource([PayoutRecord("p-1", Decimal("10000"), "+79990001122")])
    app = build_app(
        tmp_path,
        exchanges,
        payouts,
        scheduler={"payout_intake": 0.01, "ad_creator": 0.01, "order_discovery": 0.01, "chat_sync": 0.01, "conversation": 0.01, "release": 0.01},
    )
    await app.start()
    for _ in range(100):
        if any(ex.ads for ex in exchanges.values()):
            break
        await asyncio.sleep(0.01)
    await app.stop()

    assert payouts.accepted == ["p-1"]
    assert sum(len(ex.ads) for ex in exchanges.values()) == 1
    assert all(ex.closed for ex in exchanges.values())
    assert not app.orchestrator.running
