"""Domain records owned by the local ledger.

Prices and amounts are Decimal throughout. Each record can be rebuilt from a
``sqlite3.Row`` with ``from_row``.
"""
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Optional


class AdStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    DELETED = "deleted"


class Sender(str, Enum):
    SELF = "self"
    COUNTERPARTY = "counterparty"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    CHAT_STARTED = "chat_started"
    PAYMENT_RECEIVED = "payment_received"
    AWAITING_PAYMENT = "awaiting_payment"
    PAYMENT_CONFIRMED = "payment_confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    BLACKLISTED = "blacklisted"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    TransactionStatus.COMPLETED,
    TransactionStatus.CANCELLED,
    TransactionStatus.BLACKLISTED,
    TransactionStatus.FAILED,
})


class OrderStatus:
    """Exchange order status codes."""
    PAYMENT_PROCESSING = 10
    AWAITING_RELEASE = 20
    COMPLETED = 30
    CANCELLED = 40
    DISPUTED = 50

    ACTIVE = (PAYMENT_PROCESSING, AWAITING_RELEASE)

    @classmethod
    def is_active(cls, code: Optional[int]) -> bool:
        return code in cls.ACTIVE

    @classmethod
    def to_transaction_status(cls, code: int) -> TransactionStatus:
        if code == cls.AWAITING_RELEASE:
            return TransactionStatus.PAYMENT_RECEIVED
        return TransactionStatus.CHAT_STARTED


def _dec(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return Decimal(str(value))


@dataclass
class TradingAccount:
    id: int
    account_id: str
    api_key: str
    api_secret: str
    max_ads: int = 2
    is_active: bool = True
    user_id: Optional[str] = None
    last_sync_at: Optional[int] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "TradingAccount":
        return cls(
            id=row["id"],
            account_id=row["account_id"],
            api_key=row["api_key"],
            api_secret=row["api_secret"],
            max_ads=row["max_ads"],
            is_active=bool(row["is_active"]),
            user_id=row["user_id"],
            last_sync_at=row["last_sync_at"],
        )


@dataclass
class Advertisement:
    id: int
    account_id: str
    exchange_ad_id: Optional[str]
    side: str
    asset: str
    fiat: str
    price: Decimal
    quantity: Decimal
    min_amount: Decimal
    max_amount: Decimal
    payment_method: str
    status: AdStatus = AdStatus.ONLINE
    created_at: Optional[int] = None

    @property
    def is_active(self) -> bool:
        return self.status == AdStatus.ONLINE

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Advertisement":
        return cls(
            id=row["id"],
            account_id=row["account_id"],
            exchange_ad_id=row["exchange_ad_id"],
            side=row["side"],
            asset=row["asset"],
            fiat=row["fiat"],
            price=_dec(row["price"]) or Decimal("0"),
            quantity=_dec(row["quantity"]) or Decimal("0"),
            min_amount=_dec(row["min_amount"]) or Decimal("0"),
            max_amount=_dec(row["max_amount"]) or Decimal("0"),
            payment_method=row["payment_method"],
            status=AdStatus(row["status"]),
            created_at=row["created_at"],
        )


@dataclass
class Payout:
    id: int
    external_id: str
    amount: Decimal
    wallet: str
    bank: Optional[str] = None
    created_at: Optional[int] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Payout":
        return cls(
            id=row["id"],
            external_id=row["external_id"],
            amount=_dec(row["amount"]) or Decimal("0"),
            wallet=row["wallet"],
            bank=row["bank"],
            created_at=row["created_at"],
        )


@dataclass
class Transaction:
    id: int
    advertisement_id: int
    order_id: Optional[str]
    payout_id: Optional[int]
    status: TransactionStatus
    chat_step: int = 0
    owner_user_id: Optional[str] = None
    needs_review: bool = False
    failure_reason: Optional[str] = None
    created_at: Optional[int] = None
    updated_at: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Transaction":
        return cls(
            id=row["id"],
            advertisement_id=row["advertisement_id"],
            order_id=row["order_id"],
            payout_id=row["payout_id"],
            status=TransactionStatus(row["status"]),
            chat_step=row["chat_step"],
            owner_user_id=row["owner_user_id"],
            needs_review=bool(row["needs_review"]),
            failure_reason=row["failure_reason"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class ChatMessage:
    id: int
    transaction_id: int
    message_id: str
    sender: Sender
    content: str
    processed: bool = False
    sent_at: Optional[int] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ChatMessage":
        return cls(
            id=row["id"],
            transaction_id=row["transaction_id"],
            message_id=row["message_id"],
            sender=Sender(row["sender"]),
            content=row["content"],
            processed=bool(row["processed"]),
            sent_at=row["sent_at"],
        )


@dataclass
class BlacklistEntry:
    id: int
    payout_id: Optional[int]
    wallet: str
    reason: str
    created_at: Optional[int] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "BlacklistEntry":
        return cls(
            id=row["id"],
            payout_id=row["payout_id"],
            wallet=row["wallet"],
            reason=row["reason"],
            created_at=row["created_at"],
        )
