"""Typed in-process event channel.

Handlers for an event type run in the order they subscribed. A handler that
raises is logged and skipped; later handlers still receive the event.
Publishing awaits every handler before returning, so delivery order per
consumer is deterministic.
"""
import inspect
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, DefaultDict, List, Optional, Type

from .logging_setup import logger


@dataclass(frozen=True)
class AdvertisementCreated:
    advertisement_id: int
    transaction_id: int
    account_id: str
    price: Decimal


@dataclass(frozen=True)
class OrderLinked:
    order_id: str
    transaction_id: int
    account_id: str


@dataclass(frozen=True)
class OrderSynthesized:
    order_id: str
    transaction_id: int
    account_id: str


@dataclass(frozen=True)
class MessageStored:
    transaction_id: int
    message_id: str
    sender: str


@dataclass(frozen=True)
class ConversationAdvanced:
    transaction_id: int
    from_step: int
    to_step: int


@dataclass(frozen=True)
class PaymentInstructionsSent:
    transaction_id: int


@dataclass(frozen=True)
class TransactionBlacklisted:
    transaction_id: int
    wallet: Optional[str]
    reason: str


@dataclass(frozen=True)
class RateChanged:
    old_rate: Decimal
    new_rate: Decimal


Handler = Callable[[Any], Any]


class EventBus:
    def __init__(self):
        self._handlers: DefaultDict[Type, List[Handler]] = defaultdict(list)

    def subscribe(self, event_type: Type, handler: Handler) -> Callable[[], None]:
        """Register ``handler``; returns a callable that unsubscribes it."""
        self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers[event_type]:
                self._handlers[event_type].remove(handler)

        return unsubscribe

    async def publish(self, event: Any) -> None:
        for handler in list(self._handlers.get(type(event), ())):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Event handler failed | event={type(event).__name__} handler={getattr(handler, '__name__', handler)!r}")
