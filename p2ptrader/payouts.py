"""Payout intake: pull payouts from the external source into the ledger."""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional

from .errors import P2PError
from .logging_setup import logger
from .orchestrator import OperatorGate
from .persistence_sqlite import SQLiteStore


@dataclass(frozen=True)
class PayoutRecord:
    external_id: str
    amount: Decimal
    wallet: str
    bank: Optional[str] = None


class PayoutSource(ABC):
    """Yields payouts waiting to be served and accepts them."""

    @abstractmethod
    async def fetch_available(self) -> List[PayoutRecord]:
        pass

    @abstractmethod
    async def accept(self, external_id: str) -> None:
        pass


class InMemoryPayoutSource(PayoutSource):
    """Payout source for tests and dry runs."""

    def __init__(self, payouts: Optional[List[PayoutRecord]] = None):
        self.available: Dict[str, PayoutRecord] = {p.external_id: p for p in (payouts or [])}
        self.accepted: List[str] = []

    def add(self, payout: PayoutRecord) -> None:
        self.available[payout.external_id] = payout

    async def fetch_available(self) -> List[PayoutRecord]:
        return list(self.available.values())

    async def accept(self, external_id: str) -> None:
        self.available.pop(external_id, None)
        self.accepted.append(external_id)


class PayoutIntakeService:
    def __init__(self, store: SQLiteStore, source: PayoutSource, gate: OperatorGate):
        self.store = store
        self.source = source
        self.gate = gate

    async def intake(self) -> int:
        """Accept new payouts; returns how many were stored."""
        accepted = 0
        for record in await self.source.fetch_available():
            if self.store.get_payout_by_external_id(record.external_id) is not None:
                continue
            if self.store.is_blacklisted(record.wallet):
                logger.info(f"Payout skipped, wallet blacklisted | payout={record.external_id}")
                continue
            if not await self.gate.approve(f"Accept payout {record.external_id} for {record.amount} to {record.wallet}?"):
                continue
            payout, created = self.store.upsert_payout(record.external_id, record.amount, record.wallet, record.bank)
            if not created:
                continue
            try:
                await self.source.accept(record.external_id)
            except P2PError as e:
                # not ours until the source confirms
                if self.store.delete_payout(payout.id):
                    logger.warning(f"Payout accept failed, withdrawn from ledger | payout={record.external_id} error={e}")
                else:
                    logger.error(f"Payout accept failed after an ad was posted for it | payout={record.external_id} error={e}")
                continue
            accepted += 1
            logger.info(f"Payout accepted | payout={record.external_id} amount={record.amount} id={payout.id}")
        return accepted
