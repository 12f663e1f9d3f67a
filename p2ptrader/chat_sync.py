"""Chat polling for transactions with a live order."""
from typing import Optional

from .account_pool import AccountPool
from .errors import P2PError
from .events import EventBus, MessageStored
from .logging_setup import logger
from .models import Sender, Transaction
from .persistence_sqlite import SQLiteStore
from .schemas import ChatItem


def _sort_key(item: ChatItem):
    created = int(item.create_date) if item.create_date and item.create_date.isdigit() else 0
    return created, item.id


class ChatSynchronizer:
    """Copies exchange chat messages into the ledger.

    A message whose author is the order-owning user is ours and stored as
    processed; anything else is the counterparty's and stays unprocessed for
    the conversation state machine. Messages are keyed by their exchange id,
    so overlapping polls store each message once.
    """

    def __init__(self, store: SQLiteStore, pool: AccountPool, *, events: Optional[EventBus] = None, page_size: int = 50):
        self.store = store
        self.pool = pool
        self.events = events
        self.page_size = page_size

    async def sync_all(self) -> int:
        stored = 0
        for tx in self.store.list_active_transactions_with_order():
            try:
                stored += await self.sync_transaction(tx)
            except P2PError as e:
                logger.warning(f"Chat sync failed | transaction_id={tx.id} order_id={tx.order_id} error={e}")
        return stored

    async def sync_transaction(self, tx: Transaction) -> int:
        ad = self.store.get_advertisement(tx.advertisement_id)
        entry = self.pool.get(ad.account_id)
        owner = tx.owner_user_id or entry.user_id
        if not owner:
            logger.warning(f"Order owner unknown, cannot classify chat | transaction_id={tx.id}")
            return 0

        items = await entry.client.list_messages(tx.order_id, size=self.page_size)
        stored = 0
        for item in sorted(items, key=_sort_key):
            if not item.message.strip():
                continue
            sender = Sender.SELF if item.user_id == owner else Sender.COUNTERPARTY
            _, created = self.store.insert_message_if_absent(
                tx.id,
                item.id,
                sender,
                item.message,
                processed=sender == Sender.SELF,
                sent_at=_sort_key(item)[0] or None,
            )
            if not created:
                continue
            stored += 1
            logger.debug(f"Chat message stored | transaction_id={tx.id} sender={sender.value} message_id={item.id}")
            if self.events is not None:
                await self.events.publish(MessageStored(transaction_id=tx.id, message_id=item.id, sender=sender.value))
        return stored
