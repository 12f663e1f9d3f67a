"""Order discovery and reconciliation against the local ledger.

Linking an order to a transaction goes through the store's conditional
``attach_order`` and the UNIQUE ``order_id`` column, so running discovery
twice for the same order (overlapping ticks, restarts) never produces a
second transaction.
"""
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from .account_pool import AccountPool, PooledAccount
from .errors import P2PError, ReconciliationAmbiguity
from .events import EventBus, OrderLinked, OrderSynthesized
from .logging_setup import logger
from .models import AdStatus, OrderStatus, Transaction, TransactionStatus
from .persistence_sqlite import SQLiteStore
from .schemas import OrderItem, OrderPage


class OrderReconciler:
    def __init__(self, store: SQLiteStore, pool: AccountPool, *, events: Optional[EventBus] = None, page_size: int = 30, asset: str = "USDT", fiat: str = "RUB"):
        self.store = store
        self.pool = pool
        self.events = events
        self.page_size = page_size
        self.asset = asset
        self.fiat = fiat
        self._in_flight: Set[str] = set()

    async def discover_all(self) -> int:
        """Poll every pooled account; returns how many orders were newly linked or synthesized."""
        total = 0
        for entry in self.pool.accounts:
            try:
                total += await self.discover_account(entry)
            except P2PError as e:
                logger.warning(f"Order discovery failed | account_id={entry.account_id} error={e}")
        return total

    async def fetch_active_orders(self, entry: PooledAccount) -> List[OrderItem]:
        """Union of the full and pending order lists, deduplicated, active only.

        The pending endpoint sometimes reports a count with no items; the full
        list filtered by the first active status stands in for it then.
        """
        client = entry.client
        orders, _ = await self._all_pages(client.list_orders)
        pending, pending_count = await self._all_pages(client.list_pending_orders)
        orders.extend(pending)
        if pending_count > 0 and not pending:
            logger.warning(f"Pending list returned count without items | account_id={entry.account_id} count={pending_count}")
            fallback, _ = await self._all_pages(client.list_orders, status=OrderStatus.ACTIVE[0])
            orders.extend(fallback)

        unique: Dict[str, OrderItem] = {}
        for order in orders:
            if OrderStatus.is_active(order.status) and order.id not in unique:
                unique[order.id] = order
        return list(unique.values())

    async def _all_pages(self, fetch: Callable[..., Awaitable[OrderPage]], **filters) -> Tuple[List[OrderItem], int]:
        """Walk ``fetch`` page by page until the reported count is reached.

        Returns the collected items and the count of the first page.
        """
        first = await fetch(page=1, size=self.page_size, **filters)
        items: List[OrderItem] = list(first.items)
        result, page = first, 1
        while result.items and page * self.page_size < first.count:
            page += 1
            result = await fetch(page=page, size=self.page_size, **filters)
            items.extend(result.items)
        return items, first.count

    async def discover_account(self, entry: PooledAccount) -> int:
        found = 0
        for order in await self.fetch_active_orders(entry):
            try:
                tx = await self.reconcile_order(entry, order)
            except ReconciliationAmbiguity as e:
                logger.error(f"Order needs manual reconciliation | account_id={entry.account_id} order_id={order.id} error={e}")
                continue
            if tx is not None:
                found += 1
        return found

    async def reconcile_order(self, entry: PooledAccount, order: OrderItem) -> Optional[Transaction]:
        """Link ``order`` to a transaction.

        Returns the transaction when this call linked or synthesized it, None
        when the order was already known or is being handled by another call.
        """
        if order.id in self._in_flight:
            return None
        self._in_flight.add(order.id)
        try:
            return await self._reconcile(entry, order)
        finally:
            self._in_flight.discard(order.id)

    async def _reconcile(self, entry: PooledAccount, order: OrderItem) -> Optional[Transaction]:
        if self.store.get_transaction_by_order_id(order.id) is not None:
            return None

        status = OrderStatus.to_transaction_status(order.status)
        owner = order.user_id or entry.user_id
        ad = self.store.get_advertisement_by_exchange_id(order.item_id) if order.item_id else None

        if ad is not None:
            candidates = self.store.unlinked_transactions_for_advertisement(ad.id)
            if len(candidates) > 1:
                raise ReconciliationAmbiguity(
                    f"Advertisement {ad.exchange_ad_id} has {len(candidates)} unlinked transactions",
                    details={"order_id": order.id, "transactions": [t.id for t in candidates]},
                )
            if candidates:
                linked = self.store.attach_order(candidates[0].id, order.id, status, owner)
                if linked is not None and linked.id == candidates[0].id:
                    self.store.set_advertisement_status(ad.id, AdStatus.DELETED)
                    logger.info(f"Order linked | order_id={order.id} transaction_id={linked.id} status={linked.status.value}")
                    if self.events is not None:
                        await self.events.publish(OrderLinked(order_id=order.id, transaction_id=linked.id, account_id=entry.account_id))
                    await self._take_down(entry, ad.exchange_ad_id)
                    return linked
                if linked is not None:
                    return None

        return await self._synthesize(entry, order, status, owner, ad_id=ad.id if ad else None)

    async def _synthesize(self, entry: PooledAccount, order: OrderItem, status: TransactionStatus, owner: Optional[str], ad_id: Optional[int]) -> Optional[Transaction]:
        if ad_id is None:
            amount = order.amount or Decimal("0")
            ad, _ = self.store.create_advertisement(
                account_id=entry.account_id,
                exchange_ad_id=order.item_id,
                side="sell",
                asset=order.token_id or self.asset,
                fiat=order.currency_id or self.fiat,
                price=order.price or Decimal("0"),
                quantity=order.quantity or Decimal("0"),
                min_amount=amount,
                max_amount=amount,
                payment_method="unknown",
                status=AdStatus.DELETED,
            )
            ad_id = ad.id
        tx, created = self.store.get_or_create_order_transaction(
            order.id,
            advertisement_id=ad_id,
            status=status,
            owner_user_id=owner,
            needs_review=True,
        )
        if not created:
            return None
        logger.warning(f"Order without local transaction, synthesized for review | order_id={order.id} transaction_id={tx.id}")
        if self.events is not None:
            await self.events.publish(OrderSynthesized(order_id=order.id, transaction_id=tx.id, account_id=entry.account_id))
        return tx

    async def _take_down(self, entry: PooledAccount, item_id: Optional[str]) -> None:
        if not item_id:
            return
        try:
            await entry.client.cancel_ad(item_id)
        except P2PError as e:
            # the exchange usually closes a fully-matched ad on its own
            logger.debug(f"Ad take-down skipped | item_id={item_id} error={e}")

    async def refresh_tracked(self) -> int:
        """Re-read tracked orders and close transactions the exchange has finished.

        Tracked orders are derived from the ledger (linked, non-terminal
        transactions), which is what lets tracking resume after a restart.
        """
        closed = 0
        for tx in self.store.list_active_transactions_with_order():
            ad = self.store.get_advertisement(tx.advertisement_id)
            try:
                client = self.pool.client(ad.account_id)
                detail = await client.get_order(tx.order_id)
            except P2PError as e:
                logger.warning(f"Order refresh failed | order_id={tx.order_id} error={e}")
                continue
            if detail.status == OrderStatus.CANCELLED:
                self.store.update_transaction(tx.id, status=TransactionStatus.CANCELLED, failure_reason="order cancelled on exchange")
                logger.info(f"Order cancelled on exchange | order_id={tx.order_id} transaction_id={tx.id}")
                closed += 1
            elif detail.status == OrderStatus.COMPLETED:
                self.store.update_transaction(tx.id, status=TransactionStatus.COMPLETED)
                logger.info(f"Order completed on exchange | order_id={tx.order_id} transaction_id={tx.id}")
                closed += 1
            elif detail.status == OrderStatus.DISPUTED and not tx.needs_review:
                self.store.update_transaction(tx.id, needs_review=True, failure_reason="order disputed")
                logger.warning(f"Order disputed | order_id={tx.order_id} transaction_id={tx.id}")
        return closed
