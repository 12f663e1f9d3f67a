from decimal import Decimal
from pathlib import Path

import pytest

from p2ptrader.account_pool import AccountPool
from p2ptrader.exchange import InMemoryExchange
from p2ptrader.models import AdStatus
from p2ptrader.persistence_sqlite import SQLiteStore


@pytest.fixture
def store(tmp_path: Path):
    s = SQLiteStore(tmp_path / "ledger.db")
    yield s
    s.close()


@pytest.fixture
def exchanges():
    """One InMemoryExchange per account id, created on first use."""
    return {}


@pytest.fixture
def factory(exchanges):
    def build(account_id, api_key, api_secret):
        return exchanges.setdefault(account_id, InMemoryExchange(user_id=f"user-{account_id}"))
    return build


@pytest.fixture
def make_pool(store, factory):
    async def build(*account_ids, max_ads=2, **kwargs):
        for account_id in account_ids:
            store.upsert_account(account_id, f"key-{account_id}", f"secret-{account_id}", max_ads=max_ads)
        pool = AccountPool(store, factory, **kwargs)
        await pool.initialize()
        return pool
    return build


def add_local_ad(store, account_id, exchange_ad_id, price="85.00", method="SBP", status=AdStatus.ONLINE):
    ad, _ = store.create_advertisement(
        account_id=account_id,
        exchange_ad_id=exchange_ad_id,
        side="sell",
        asset="USDT",
        fiat="RUB",
        price=Decimal(price),
        quantity=Decimal("100"),
        min_amount=Decimal("10000"),
        max_amount=Decimal("10000"),
        payment_method=method,
        status=status,
    )
    return ad
