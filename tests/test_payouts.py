from decimal import Decimal

import pytest

from conftest import add_local_ad
from p2ptrader.errors import TransientNetworkError
from p2ptrader.orchestrator import Mode, OperatorGate
from p2ptrader.payouts import InMemoryPayoutSource, PayoutIntakeService, PayoutRecord


def record(external_id, wallet="+79990001122", amount="10000"):
    return PayoutRecord(external_id=external_id, amount=Decimal(amount), wallet=wallet, bank="Тинькофф")


@pytest.mark.asyncio
async def test_intake_accepts_and_stores_payouts(store):
    source = InMemoryPayoutSource([record("p-1"), record("p-2", wallet="w2")])
    intake = PayoutIntakeService(store, source, OperatorGate(Mode.AUTOMATIC))

    assert await intake.intake() == 2
    assert source.accepted == ["p-1", "p-2"]
    stored = store.get_payout_by_external_id("p-1")
    assert stored.amount == Decimal("10000")
    assert stored.bank == "Тинькофф"
    assert await intake.intake() == 0


@pytest.mark.asyncio
async def test_known_payout_is_not_accepted_twice(store):
    store.upsert_payout("p-1", Decimal("10000"), "w1")
    source = InMemoryPayoutSource([record("p-1", wallet="w1")])
    assert await PayoutIntakeService(store, source, OperatorGate()).intake() == 0
    assert source.accepted == []


@pytest.mark.asyncio
async def test_blacklisted_wallet_is_skipped(store):
    store.add_to_blacklist("+79990001122", "failed verification at step 2")
    source = InMemoryPayoutSource([record("p-1")])
    assert await PayoutIntakeService(store, source, OperatorGate()).intake() == 0
    assert store.get_payout_by_external_id("p-1") is None
    assert "p-1" in source.available


@pytest.mark.asyncio
async def test_manual_mode_asks_operator_per_payout(store):
    source = InMemoryPayoutSource([record("p-1", wallet="w1"), record("p-2", wallet="w2")])
    gate = OperatorGate(Mode.MANUAL, lambda message: "p-2" in message)
    assert await PayoutIntakeService(store, source, gate).intake() == 1
    assert source.accepted == ["p-2"]
    assert store.get_payout_by_external_id("p-1") is None


class FlakyPayoutSource(InMemoryPayoutSource):
    def __init__(self, store, payouts, failures=1):
        super().__init__(payouts)
        self.store = store
        self.failures = failures
        self.seen_in_ledger = []

    async def accept(self, external_id):
        self.seen_in_ledger.append(self.store.get_payout_by_external_id(external_id) is not None)
        if self.failures:
            self.failures -= 1
            raise TransientNetworkError("payout source timed out")
        await super().accept(external_id)


@pytest.mark.asyncio
async def test_payout_is_recorded_before_source_accepts(store):
    source = FlakyPayoutSource(store, [record("p-1")], failures=0)
    assert await PayoutIntakeService(store, source, OperatorGate()).intake() == 1
    assert source.seen_in_ledger == [True]


@pytest.mark.asyncio
async def test_failed_accept_withdraws_payout_and_retries_next_tick(store):
    source = FlakyPayoutSource(store, [record("p-1"), record("p-2", wallet="w2")])
    intake = PayoutIntakeService(store, source, OperatorGate())

    assert await intake.intake() == 1
    assert store.get_payout_by_external_id("p-1") is None
    assert store.get_payout_by_external_id("p-2") is not None
    assert source.accepted == ["p-2"]

    assert await intake.intake() == 1
    assert source.accepted == ["p-2", "p-1"]
    assert store.get_payout_by_external_id("p-1") is not None


def test_delete_payout_keeps_payouts_with_transactions(store):
    free, _ = store.upsert_payout("p-1", Decimal("100"), "w1")
    used, _ = store.upsert_payout("p-2", Decimal("100"), "w2")
    ad = add_local_ad(store, "acc-1", "ad-1")
    store.create_transaction(ad.id, payout_id=used.id)

    assert store.delete_payout(free.id)
    assert not store.delete_payout(used.id)
    assert store.get_payout(free.id) is None
    assert store.get_payout(used.id) is not None
