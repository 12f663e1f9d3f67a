"""Asset release for transactions whose payment has been confirmed."""
from .account_pool import AccountPool
from .errors import P2PError, ValidationError
from .logging_setup import logger
from .models import Transaction, TransactionStatus
from .orchestrator import OperatorGate
from .persistence_sqlite import SQLiteStore


class ReleaseService:
    """Releases escrow for ``payment_confirmed`` transactions.

    Payment confirmation itself comes from outside the engine (receipt
    verification); :meth:`confirm_payment` is its entry point.
    """

    def __init__(self, store: SQLiteStore, pool: AccountPool, gate: OperatorGate):
        self.store = store
        self.pool = pool
        self.gate = gate

    def confirm_payment(self, transaction_id: int) -> Transaction:
        tx = self.store.get_transaction(transaction_id)
        if tx is None:
            raise ValidationError(f"Unknown transaction {transaction_id}")
        if tx.status != TransactionStatus.AWAITING_PAYMENT:
            raise ValidationError(f"Transaction {transaction_id} is {tx.status.value}, not awaiting payment")
        logger.info(f"Payment confirmed | transaction_id={transaction_id} order_id={tx.order_id}")
        return self.store.update_transaction(transaction_id, status=TransactionStatus.PAYMENT_CONFIRMED)

    async def release_confirmed(self) -> int:
        released = 0
        for tx in self.store.list_transactions_by_status(TransactionStatus.PAYMENT_CONFIRMED):
            if not tx.order_id:
                continue
            if not await self.gate.approve(f"Release assets for order {tx.order_id} (transaction {tx.id})?"):
                continue
            ad = self.store.get_advertisement(tx.advertisement_id)
            try:
                await self.pool.client(ad.account_id).release_order(tx.order_id)
            except P2PError as e:
                logger.warning(f"Release failed | order_id={tx.order_id} error={e}")
                continue
            self.store.update_transaction(tx.id, status=TransactionStatus.COMPLETED)
            released += 1
            logger.info(f"Assets released | order_id={tx.order_id} transaction_id={tx.id}")
        return released
