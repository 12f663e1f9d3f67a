from decimal import Decimal

import pytest

from p2ptrader.ad_creator import AdvertisementService, CreationOutcome
from p2ptrader.errors import TransientNetworkError
from p2ptrader.events import AdvertisementCreated, EventBus
from p2ptrader.exchange import InMemoryExchange
from p2ptrader.exchange_rate import ExchangeRateService
from p2ptrader.models import TransactionStatus
from p2ptrader.orchestrator import Mode, OperatorGate
from p2ptrader.pricing import PriceAllocator


def make_service(store, pool, *, gate=None, events=None):
    allocator = PriceAllocator(fixed_deltas=[Decimal("0"), Decimal("-5"), Decimal("5")], max_attempts=3)
    return AdvertisementService(
        store,
        pool,
        allocator,
        ExchangeRateService(Decimal("85.00")),
        gate or OperatorGate(Mode.AUTOMATIC),
        events=events,
    )


def payout(store, external_id, amount="10000", wallet="+79990001122"):
    p, _ = store.upsert_payout(external_id, Decimal(amount), wallet, "Тинькофф")
    return p


@pytest.mark.asyncio
async def test_posts_ad_and_pending_transaction(make_pool, store, exchanges):
    pool = await make_pool("acc-1")
    events = EventBus()
    seen = []
    events.subscribe(AdvertisementCreated, seen.append)
    service = make_service(store, pool, events=events)
    p = payout(store, "p-1")

    result = await service.create_for_payout(p)

    assert result.outcome == CreationOutcome.CREATED
    tx = result.transaction
    assert tx.status == TransactionStatus.PENDING
    assert tx.payout_id == p.id
    assert tx.order_id is None
    ad = store.get_advertisement(tx.advertisement_id)
    assert ad.price == Decimal("85.00")
    assert ad.quantity == Decimal("122.65")
    assert ad.payment_method == "SBP"
    remote = exchanges["acc-1"].ads[ad.exchange_ad_id]
    assert remote["payments"] == ["101"]
    assert remote["minAmount"] == remote["maxAmount"] == "10000"
    assert seen[0].transaction_id == tx.id


@pytest.mark.asyncio
async def test_second_ad_on_account_uses_other_method_and_clear_price(make_pool, store, exchanges):
    pool = await make_pool("acc-1")
    service = make_service(store, pool)
    assert await service.create_pending() == 0
    payout(store, "p-1")
    payout(store, "p-2", wallet="2200700011112222")

    assert await service.create_pending() == 2

    ads = store.list_active_advertisements("acc-1")
    assert [a.payment_method for a in ads] == ["SBP", "Tinkoff"]
    assert [a.price for a in ads] == [Decimal("85.00"), Decimal("80.00")]
    assert sorted(a["payments"][0] for a in exchanges["acc-1"].ads.values()) == ["101", "102"]


@pytest.mark.asyncio
async def test_ad_unknown_to_ledger_still_forces_other_method(make_pool, store, exchanges):
    pool = await make_pool("acc-1")
    await exchanges["acc-1"].create_ad({"price": "90.00", "paymentIds": ["101"]})
    service = make_service(store, pool)

    result = await service.create_for_payout(payout(store, "p-1"))

    assert result.outcome == CreationOutcome.CREATED
    ad = store.get_advertisement(result.transaction.advertisement_id)
    assert ad.payment_method == "Tinkoff"
    assert exchanges["acc-1"].ads[ad.exchange_ad_id]["payments"] == ["102"]


@pytest.mark.asyncio
async def test_full_capacity_defers_remaining_payouts(make_pool, store):
    pool = await make_pool("acc-1")
    service = make_service(store, pool)
    for i in range(3):
        payout(store, f"p-{i}", wallet=f"wallet-{i}")

    assert await service.create_pending() == 2
    left = store.list_payouts_without_transaction()
    assert [p.external_id for p in left] == ["p-2"]
    result = await service.create_for_payout(left[0])
    assert result.outcome == CreationOutcome.DEFERRED


@pytest.mark.asyncio
async def test_least_loaded_account_gets_the_next_ad(make_pool, store):
    pool = await make_pool("acc-1", "acc-2")
    service = make_service(store, pool)
    payout(store, "p-1", wallet="w1")
    payout(store, "p-2", wallet="w2")

    await service.create_pending()

    assert store.count_active_advertisements("acc-1") == 1
    assert store.count_active_advertisements("acc-2") == 1


@pytest.mark.asyncio
async def test_account_without_payment_method_falls_through(make_pool, store, exchanges):
    exchanges["acc-1"] = InMemoryExchange("user-acc-1", payment_methods=[])
    pool = await make_pool("acc-1", "acc-2")
    service = make_service(store, pool)

    result = await service.create_for_payout(payout(store, "p-1"))

    assert result.outcome == CreationOutcome.CREATED
    assert store.get_advertisement(result.transaction.advertisement_id).account_id == "acc-2"
    assert exchanges["acc-1"].ads == {}


@pytest.mark.asyncio
async def test_existing_blacklisted_and_declined(make_pool, store):
    pool = await make_pool("acc-1")
    service = make_service(store, pool)
    p = payout(store, "p-1")
    first = await service.create_for_payout(p)
    again = await service.create_for_payout(p)
    assert again.outcome == CreationOutcome.EXISTING
    assert again.transaction.id == first.transaction.id

    store.add_to_blacklist("bad-wallet", "failed verification at step 1")
    assert (await service.create_for_payout(payout(store, "p-2", wallet="bad-wallet"))).outcome == CreationOutcome.BLACKLISTED

    manual = make_service(store, pool, gate=OperatorGate(Mode.MANUAL))
    assert (await manual.create_for_payout(payout(store, "p-3", wallet="w3"))).outcome == CreationOutcome.DECLINED
    assert store.count_active_advertisements("acc-1") == 1


@pytest.mark.asyncio
async def test_exchange_failure_leaves_payout_for_next_tick(make_pool, store, exchanges):
    pool = await make_pool("acc-1")
    service = make_service(store, pool)
    p = payout(store, "p-1")
    exchanges["acc-1"].failures["create_ad"] = TransientNetworkError("timeout")

    assert await service.create_pending() == 0
    assert store.get_transaction_for_payout(p.id) is None
    assert await service.create_pending() == 1
    assert store.get_transaction_for_payout(p.id) is not None


def test_build_params_uses_exchange_field_names(store):
    service = make_service(store, pool=None)
    params = service.build_params(price=Decimal("85.50"), quantity=Decimal("122.00"), amount=Decimal("10000"), payment_id="101")
    assert params["tokenId"] == "USDT"
    assert params["currencyId"] == "RUB"
    assert params["side"] == "1"
    assert params["price"] == "85.50"
    assert params["paymentIds"] == ["101"]
    assert params["paymentPeriod"] == "15"
