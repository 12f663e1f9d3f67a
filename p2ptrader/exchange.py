"""
Exchange interface consumed by the automation engine.

All methods are coroutines and return the pydantic payload models from
:mod:`p2ptrader.schemas`. Failures are raised as the typed errors from
:mod:`p2ptrader.errors`.
"""

import itertools
import time
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from .errors import NotFoundError
from .models import OrderStatus
from .schemas import AccountInfo, AdItem, ChatItem, OrderItem, OrderPage, PaymentMethodItem, parse, parse_list


class P2PExchange(ABC):
    """Abstract P2P exchange account: orders, chat, ads, payment methods."""

    @abstractmethod
    async def get_server_time(self) -> int:
        """Return the exchange server time in epoch milliseconds."""

    @abstractmethod
    async def get_account_info(self) -> AccountInfo:
        """Return the profile of the account owning the credentials."""

    @abstractmethod
    async def list_orders(self, *, status: Optional[int] = None, page: int = 1, size: int = 30) -> OrderPage:
        """List orders, optionally filtered by status code."""

    @abstractmethod
    async def list_pending_orders(self, *, page: int = 1, size: int = 30) -> OrderPage:
        """List orders the exchange considers pending.

        The exchange is known to return a nonzero ``count`` with an empty
        ``items`` list from this endpoint.
        """

    @abstractmethod
    async def get_order(self, order_id: str) -> OrderItem:
        """Return order detail. Raises NotFoundError for unknown ids."""

    @abstractmethod
    async def list_messages(self, order_id: str, *, size: int = 50) -> List[ChatItem]:
        """Return the chat messages of an order (order not guaranteed)."""

    @abstractmethod
    async def send_message(self, order_id: str, text: str) -> None:
        """Send a text chat message to the order counterparty."""

    @abstractmethod
    async def create_ad(self, params: Dict[str, Any]) -> str:
        """Post an advertisement; returns the exchange item id."""

    @abstractmethod
    async def cancel_ad(self, item_id: str) -> None:
        """Take an advertisement down."""

    @abstractmethod
    async def list_my_ads(self) -> List[AdItem]:
        """Return this account's advertisements that are currently online."""

    @abstractmethod
    async def list_online_ads(self, *, token_id: str, currency_id: str, side: str) -> List[AdItem]:
        """Return the market's online advertisements."""

    @abstractmethod
    async def list_payment_methods(self) -> List[PaymentMethodItem]:
        """Return the payment methods configured on the account."""

    @abstractmethod
    async def get_coin_balance(self, coin: str) -> Decimal:
        """Return the funding-account balance of ``coin``."""

    @abstractmethod
    async def release_order(self, order_id: str) -> None:
        """Release escrowed assets to the buyer."""

    async def start(self) -> None:
        """Open network resources."""

    async def close(self) -> None:
        """Release network resources."""


class InMemoryExchange(P2PExchange):
    """An exchange double for tests that records calls and lets tests drive orders and chat.

    ``failures`` maps a method name to an exception raised on the next call
    of that method. ``pending_count_mismatch``
    makes :meth:`list_pending_orders` report a count with no items.
    """

    def __init__(self, user_id: str = "self-user", *, payment_methods: Optional[List[Dict[str, Any]]] = None, server_time_offset_ms: int = 0):
        self.user_id = user_id
        self.server_time_offset_ms = server_time_offset_ms
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.messages: Dict[str, List[Dict[str, Any]]] = {}
        self.ads: Dict[str, Dict[str, Any]] = {}
        self.market_ads: List[Dict[str, Any]] = []
        self.balances: Dict[str, Decimal] = {}
        self.released: List[str] = []
        self.calls: List[str] = []
        self.failures: Dict[str, Any] = {}
        self.pending_count_mismatch = False
        self.closed = False
        self._ids = itertools.count(1)
        self.payment_methods = payment_methods if payment_methods is not None else [
            {"id": "101", "paymentType": "75", "paymentConfigVo": {"paymentName": "SBP"}},
            {"id": "102", "paymentType": "64", "bankName": "Tinkoff", "paymentConfigVo": {"paymentName": "Tinkoff"}},
        ]

    def _gen_id(self, prefix: str) -> str:
        return f"{prefix}{next(self._ids)}"

    def _record(self, name: str) -> None:
        self.calls.append(name)
        failure = self.failures.pop(name, None)
        if failure is not None:
            raise failure

    # --- test drivers ---
    def add_order(self, item_id: str, *, status: int = OrderStatus.PAYMENT_PROCESSING, order_id: Optional[str] = None, counterparty: str = "buyer-1", amount: str = "10000") -> str:
        oid = order_id or self._gen_id("o")
        self.orders[oid] = {
            "id": oid,
            "itemId": item_id,
            "userId": self.user_id,
            "targetUserId": counterparty,
            "status": status,
            "side": 1,
            "amount": amount,
            "createDate": str(int(time.time() * 1000)),
        }
        self.messages.setdefault(oid, [])
        return oid

    def set_order_status(self, order_id: str, status: int) -> None:
        self.orders[order_id]["status"] = status

    def add_counterparty_message(self, order_id: str, text: str, *, message_id: Optional[str] = None) -> str:
        counterparty = self.orders[order_id]["targetUserId"]
        return self._append_message(order_id, counterparty, text, message_id)

    def _append_message(self, order_id: str, user_id: str, text: str, message_id: Optional[str] = None) -> str:
        mid = message_id or self._gen_id("m")
        thread = self.messages.setdefault(order_id, [])
        # newest first, like the live endpoint
        thread.insert(0, {"id": mid, "message": text, "userId": user_id, "contentType": "str", "createDate": str(int(time.time() * 1000) + len(thread))})
        return mid

    def sent_messages(self, order_id: str) -> List[str]:
        return [m["message"] for m in reversed(self.messages.get(order_id, [])) if m["userId"] == self.user_id]

    # --- P2PExchange ---
    async def get_server_time(self) -> int:
        self._record("get_server_time")
        return int(time.time() * 1000) + self.server_time_offset_ms

    async def get_account_info(self) -> AccountInfo:
        self._record("get_account_info")
        return parse(AccountInfo, {"userId": self.user_id, "nickName": "test"})

    async def list_orders(self, *, status: Optional[int] = None, page: int = 1, size: int = 30) -> OrderPage:
        self._record("list_orders")
        items = [o for o in self.orders.values() if status is None or o["status"] == status]
        return parse(OrderPage, {"count": len(items), "items": items[(page - 1) * size:page * size]})

    async def list_pending_orders(self, *, page: int = 1, size: int = 30) -> OrderPage:
        self._record("list_pending_orders")
        items = [o for o in self.orders.values() if OrderStatus.is_active(o["status"])]
        if self.pending_count_mismatch:
            return parse(OrderPage, {"count": len(items), "items": []})
        return parse(OrderPage, {"count": len(items), "items": items[(page - 1) * size:page * size]})

    async def get_order(self, order_id: str) -> OrderItem:
        self._record("get_order")
        if order_id not in self.orders:
            raise NotFoundError(f"Order {order_id} not found", code=404)
        return parse(OrderItem, self.orders[order_id])

    async def list_messages(self, order_id: str, *, size: int = 50) -> List[ChatItem]:
        self._record("list_messages")
        return parse_list(ChatItem, self.messages.get(order_id, [])[:size])

    async def send_message(self, order_id: str, text: str) -> None:
        self._record("send_message")
        if order_id not in self.orders:
            raise NotFoundError(f"Order {order_id} not found", code=404)
        self._append_message(order_id, self.user_id, text)

    async def create_ad(self, params: Dict[str, Any]) -> str:
        self._record("create_ad")
        item_id = self._gen_id("ad")
        self.ads[item_id] = {
            "id": item_id,
            "userId": self.user_id,
            "tokenId": params.get("tokenId"),
            "currencyId": params.get("currencyId"),
            "side": int(params.get("side", 1)),
            "price": params["price"],
            "lastQuantity": params.get("quantity"),
            "minAmount": params.get("minAmount"),
            "maxAmount": params.get("maxAmount"),
            "payments": params.get("paymentIds", []),
            "status": 10,
        }
        return item_id

    async def cancel_ad(self, item_id: str) -> None:
        self._record("cancel_ad")
        if self.ads.pop(item_id, None) is None:
            raise NotFoundError(f"Advertisement {item_id} not found", code=404)

    async def list_my_ads(self) -> List[AdItem]:
        self._record("list_my_ads")
        return parse_list(AdItem, self.ads.values())

    async def list_online_ads(self, *, token_id: str, currency_id: str, side: str) -> List[AdItem]:
        self._record("list_online_ads")
        return parse_list(AdItem, self.market_ads)

    async def list_payment_methods(self) -> List[PaymentMethodItem]:
        self._record("list_payment_methods")
        return parse_list(PaymentMethodItem, self.payment_methods)

    async def get_coin_balance(self, coin: str) -> Decimal:
        self._record("get_coin_balance")
        return self.balances.get(coin, Decimal("0"))

    async def release_order(self, order_id: str) -> None:
        self._record("release_order")
        if order_id not in self.orders:
            raise NotFoundError(f"Order {order_id} not found", code=404)
        self.orders[order_id]["status"] = OrderStatus.COMPLETED
        self.released.append(order_id)

    async def close(self) -> None:
        self.closed = True


ExchangeFactory = Callable[[str, str, str], P2PExchange]
