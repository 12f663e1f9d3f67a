"""Advertisement creation: turn an accepted payout into a posted ad plus its transaction."""
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Set

from .account_pool import AccountPool, AccountSlot
from .errors import P2PError, ValidationError
from .events import AdvertisementCreated, EventBus
from .exchange_rate import ExchangeRateService
from .logging_setup import logger
from .models import Payout, Transaction
from .orchestrator import OperatorGate
from .persistence_sqlite import SQLiteStore
from .pricing import PriceAllocator, compute_quantity


class CreationOutcome(str, Enum):
    CREATED = "created"
    EXISTING = "existing"
    BLACKLISTED = "blacklisted"
    DECLINED = "declined"
    DEFERRED = "deferred"


@dataclass
class CreationResult:
    outcome: CreationOutcome
    transaction: Optional[Transaction] = None


class AdvertisementService:
    def __init__(
        self,
        store: SQLiteStore,
        pool: AccountPool,
        allocator: PriceAllocator,
        rates: ExchangeRateService,
        gate: OperatorGate,
        *,
        events: Optional[EventBus] = None,
        asset: str = "USDT",
        fiat: str = "RUB",
        quantity_buffer: Decimal = Decimal("5"),
        payment_period_minutes: int = 15,
        remark: str = "",
    ):
        self.store = store
        self.pool = pool
        self.allocator = allocator
        self.rates = rates
        self.gate = gate
        self.events = events
        self.asset = asset
        self.fiat = fiat
        self.quantity_buffer = Decimal(quantity_buffer)
        self.payment_period_minutes = payment_period_minutes
        self.remark = remark

    async def create_pending(self) -> int:
        """Post ads for stored payouts that have no transaction yet.

        Stops at the first payout deferred for lack of capacity.
        """
        created = 0
        for payout in self.store.list_payouts_without_transaction():
            try:
                result = await self.create_for_payout(payout)
            except P2PError as e:
                logger.warning(f"Ad creation failed | payout={payout.external_id} error={e}")
                continue
            if result.outcome == CreationOutcome.CREATED:
                created += 1
            elif result.outcome == CreationOutcome.DEFERRED:
                break
        return created

    async def create_for_payout(self, payout: Payout) -> CreationResult:
        existing = self.store.get_transaction_for_payout(payout.id)
        if existing is not None:
            return CreationResult(CreationOutcome.EXISTING, existing)
        if self.store.is_blacklisted(payout.wallet):
            logger.info(f"Payout wallet blacklisted | payout={payout.external_id}")
            return CreationResult(CreationOutcome.BLACKLISTED)
        if not await self.gate.approve(f"Create advertisement for payout {payout.external_id} ({payout.amount} {self.fiat})?"):
            return CreationResult(CreationOutcome.DECLINED)

        tried: Set[str] = set()
        while True:
            slot = await self.pool.select_account_with_capacity(exclude=tried)
            if slot is None:
                logger.info(f"Ad creation deferred, no account capacity | payout={payout.external_id}")
                return CreationResult(CreationOutcome.DEFERRED)
            tried.add(slot.entry.account_id)
            try:
                tx = await self._post(slot, payout)
            except ValidationError as e:
                logger.warning(f"Ad attempt rejected | account_id={slot.entry.account_id} payout={payout.external_id} error={e}")
                continue
            return CreationResult(CreationOutcome.CREATED, tx)

    def build_params(self, *, price: Decimal, quantity: Decimal, amount: Decimal, payment_id: str) -> Dict[str, Any]:
        return {
            "tokenId": self.asset,
            "currencyId": self.fiat,
            "side": "1",
            "priceType": "0",
            "premium": "",
            "price": str(price),
            "minAmount": str(amount),
            "maxAmount": str(amount),
            "quantity": str(quantity),
            "paymentIds": [payment_id],
            "remark": self.remark,
            "paymentPeriod": str(self.payment_period_minutes),
            "itemType": "ORIGIN",
        }

    async def _post(self, slot: AccountSlot, payout: Payout) -> Transaction:
        entry = slot.entry
        method = await self.pool.choose_payment_method(entry.account_id)
        payment_id = await self.pool.resolve_payment_id(entry.account_id, method)
        base = await self.rates.get_rate()
        active_prices = [ad.price for ad in self.store.list_active_advertisements()]
        price = self.allocator.allocate_price(base, active_prices)
        quantity = compute_quantity(payout.amount, price, self.quantity_buffer)

        params = self.build_params(price=price, quantity=quantity, amount=payout.amount, payment_id=payment_id)
        item_id = await entry.client.create_ad(params)

        ad, _ = self.store.create_advertisement(
            account_id=entry.account_id,
            exchange_ad_id=item_id,
            side="sell",
            asset=self.asset,
            fiat=self.fiat,
            price=price,
            quantity=quantity,
            min_amount=payout.amount,
            max_amount=payout.amount,
            payment_method=method,
        )
        tx = self.store.create_transaction(ad.id, payout_id=payout.id)
        logger.info(
            f"Advertisement posted | account_id={entry.account_id} item_id={item_id} price={price} "
            f"quantity={quantity} method={method} transaction_id={tx.id}"
        )
        if self.events is not None:
            await self.events.publish(AdvertisementCreated(advertisement_id=ad.id, transaction_id=tx.id, account_id=entry.account_id, price=price))
        return tx
