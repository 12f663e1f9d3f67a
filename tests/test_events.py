import pytest

from p2ptrader.events import EventBus, OrderLinked, PaymentInstructionsSent


@pytest.mark.asyncio
async def test_handlers_receive_only_their_event_type():
    bus = EventBus()
    linked, paid = [], []
    bus.subscribe(OrderLinked, linked.append)
    bus.subscribe(PaymentInstructionsSent, paid.append)

    await bus.publish(OrderLinked(order_id="o1", transaction_id=1, account_id="acc-1"))

    assert linked == [OrderLinked(order_id="o1", transaction_id=1, account_id="acc-1")]
    assert paid == []


@pytest.mark.asyncio
async def test_async_handlers_are_awaited_and_unsubscribe_works():
    bus = EventBus()
    seen = []

    async def handler(event):
        seen.append(event.transaction_id)

    unsubscribe = bus.subscribe(PaymentInstructionsSent, handler)
    await bus.publish(PaymentInstructionsSent(transaction_id=7))
    unsubscribe()
    unsubscribe()
    await bus.publish(PaymentInstructionsSent(transaction_id=8))
    assert seen == [7]


@pytest.mark.asyncio
async def test_failing_handler_does_not_block_others():
    bus = EventBus()
    seen = []

    def broken(event):
        raise RuntimeError("handler bug")

    bus.subscribe(PaymentInstructionsSent, broken)
    bus.subscribe(PaymentInstructionsSent, seen.append)
    await bus.publish(PaymentInstructionsSent(transaction_id=1))
    assert len(seen) == 1
