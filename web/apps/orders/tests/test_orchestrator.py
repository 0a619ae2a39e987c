"""Unit tests for the OrderOrchestrator.

These tests drive the orchestrator against the in-memory store and stub
collaborators: happy path, payment failures (declined, raising, timing out),
stock shortages, status transitions and the concurrent oversell race.
"""

import asyncio
import uuid
from decimal import Decimal

import pytest

from apps.orders.adapters import InMemoryStore, PaymentGatewayStub, ShippingNotifierStub
from apps.orders.domain import OrderItem, OrderOrchestrator, OrderStatus
from apps.orders.errors import (
    InsufficientStock,
    InvalidInput,
    InvalidTransition,
    OrderNotFound,
    PaymentFailed,
    ProductNotFound,
)

USER = uuid.UUID("00000000-0000-0000-0000-0000000000a1")


class PaymentsRaising:
    """Payments stub whose transport always fails."""
    async def process_payment(self, order_id, amount):
        raise ConnectionError("gateway unreachable")


class ShippingRaising:
    """Shipping stub that always fails."""
    async def notify_shipping(self, order):
        raise ConnectionError("webhook down")


async def make(stock=5, price="10.00", payments=None, shipping=None, timeout=None, latency=0.0):
    store = InMemoryStore(latency=latency)
    product = await store.create_product("P1", Decimal(price), stock)
    orchestrator = OrderOrchestrator(
        store,
        payments or PaymentGatewayStub(),
        shipping or ShippingNotifierStub(),
        payment_timeout=timeout,
    )
    return orchestrator, store, product


@pytest.mark.asyncio
async def test_create_order_ok():
    """Payment approved: order is processing, total 20.00, stock 5 -> 3."""
    orchestrator, store, p1 = await make()
    order = await orchestrator.create_order(USER, [OrderItem(p1.id, 2, Decimal("10.00"))])

    assert order.status == OrderStatus.PROCESSING
    assert order.total == Decimal("20.00")
    assert (await store.get_product(p1.id)).stock == 3
    assert (await store.get_order(order.id)).status == OrderStatus.PROCESSING


@pytest.mark.asyncio
async def test_total_is_sum_of_price_times_quantity():
    orchestrator, store, p1 = await make(stock=100)
    p2 = await store.create_product("P2", Decimal("0.10"), 100)
    items = [
        OrderItem(p1.id, 3, Decimal("19.99")),
        OrderItem(p2.id, 7, Decimal("0.10")),
        OrderItem(p1.id, 1, Decimal("5.05")),
    ]
    order = await orchestrator.create_order(USER, items)
    assert order.total == Decimal("59.97") + Decimal("0.70") + Decimal("5.05")
    assert (await store.get_product(p1.id)).stock == 96
    assert (await store.get_product(p2.id)).stock == 93


@pytest.mark.asyncio
async def test_unit_price_is_the_one_given_at_creation():
    """The caller's price is charged even if the product lists another."""
    payments = PaymentGatewayStub()
    orchestrator, store, p1 = await make(price="10.00", payments=payments)
    order = await orchestrator.create_order(USER, [OrderItem(p1.id, 2, Decimal("8.00"))])
    assert order.total == Decimal("16.00")
    assert payments.calls == [(order.id, Decimal("16.00"))]


@pytest.mark.asyncio
async def test_payment_declined_cancels_order_and_keeps_stock():
    """Payment declined: PaymentFailed, order cancelled, stock still 5."""
    orchestrator, store, p1 = await make(payments=PaymentGatewayStub(approve=False))

    with pytest.raises(PaymentFailed) as e:
        await orchestrator.create_order(USER, [OrderItem(p1.id, 2, Decimal("10.00"))])

    assert str(e.value) == "PAYMENT_FAILED"
    assert e.value.order.status == OrderStatus.CANCELLED
    stored = await store.get_order(e.value.entity_id)
    assert stored.status == OrderStatus.CANCELLED
    assert (await store.get_product(p1.id)).stock == 5


@pytest.mark.asyncio
async def test_payment_error_is_treated_as_failure():
    orchestrator, store, p1 = await make(payments=PaymentsRaising())
    with pytest.raises(PaymentFailed) as e:
        await orchestrator.create_order(USER, [OrderItem(p1.id, 1, Decimal("10.00"))])
    assert (await store.get_order(e.value.entity_id)).status == OrderStatus.CANCELLED
    assert (await store.get_product(p1.id)).stock == 5


@pytest.mark.asyncio
async def test_payment_timeout_is_treated_as_failure():
    slow = PaymentGatewayStub(approve=True, delay=1.0)
    orchestrator, store, p1 = await make(payments=slow, timeout=0.01)
    with pytest.raises(PaymentFailed) as e:
        await orchestrator.create_order(USER, [OrderItem(p1.id, 1, Decimal("10.00"))])
    assert (await store.get_order(e.value.entity_id)).status == OrderStatus.CANCELLED
    assert (await store.get_product(p1.id)).stock == 5


@pytest.mark.asyncio
async def test_create_order_empty():
    """Validation: an empty order is rejected before anything is written."""
    payments = PaymentGatewayStub()
    orchestrator, store, _ = await make(payments=payments)
    with pytest.raises(InvalidInput):
        await orchestrator.create_order(USER, [])
    assert await store.get_user_orders(USER) == []
    assert payments.calls == []


@pytest.mark.asyncio
async def test_insufficient_stock_after_payment():
    """Stock is checked at decrement time; the order stays processing."""
    orchestrator, store, p1 = await make(stock=1)
    with pytest.raises(InsufficientStock) as e:
        await orchestrator.create_order(USER, [OrderItem(p1.id, 2, Decimal("10.00"))])

    assert e.value.entity_id == p1.id
    assert (await store.get_product(p1.id)).stock == 1
    [order] = await store.get_user_orders(USER)
    assert order.status == OrderStatus.PROCESSING


@pytest.mark.asyncio
async def test_stock_decrement_is_all_or_nothing():
    orchestrator, store, p1 = await make(stock=5)
    p2 = await store.create_product("P2", Decimal("3.00"), 0)
    with pytest.raises(InsufficientStock) as e:
        await orchestrator.create_order(
            USER, [OrderItem(p1.id, 2, Decimal("10.00")), OrderItem(p2.id, 1, Decimal("3.00"))]
        )
    assert e.value.entity_id == p2.id
    assert (await store.get_product(p1.id)).stock == 5


@pytest.mark.asyncio
async def test_unknown_product():
    orchestrator, store, p1 = await make()
    missing = uuid.uuid4()
    with pytest.raises(ProductNotFound) as e:
        await orchestrator.create_order(
            USER, [OrderItem(p1.id, 1, Decimal("10.00")), OrderItem(missing, 1, Decimal("1.00"))]
        )
    assert e.value.entity_id == missing
    assert (await store.get_product(p1.id)).stock == 5


@pytest.mark.asyncio
async def test_concurrent_orders_cannot_oversell():
    """Two orders for the last unit: one succeeds, one gets InsufficientStock."""
    payments = PaymentGatewayStub(delay=0.01)
    orchestrator, store, p1 = await make(stock=1, payments=payments, latency=0.005)

    results = await asyncio.gather(
        orchestrator.create_order(USER, [OrderItem(p1.id, 1, Decimal("10.00"))]),
        orchestrator.create_order(USER, [OrderItem(p1.id, 1, Decimal("10.00"))]),
        return_exceptions=True,
    )

    failures = [r for r in results if isinstance(r, Exception)]
    successes = [r for r in results if not isinstance(r, Exception)]
    assert len(successes) == 1 and successes[0].status == OrderStatus.PROCESSING
    assert len(failures) == 1 and isinstance(failures[0], InsufficientStock)
    assert (await store.get_product(p1.id)).stock == 0


@pytest.mark.asyncio
async def test_get_order_unknown_returns_none():
    orchestrator, _, _ = await make()
    assert await orchestrator.get_order(uuid.uuid4()) is None


@pytest.mark.asyncio
@pytest.mark.parametrize("bad_id", ["order-does-not-exist", "", None])
async def test_reads_with_malformed_ids_are_misses(bad_id):
    orchestrator, _, _ = await make()
    assert await orchestrator.get_order(bad_id) is None
    assert await orchestrator.get_user_orders(bad_id) == []


@pytest.mark.asyncio
async def test_get_user_orders():
    orchestrator, _, p1 = await make()
    assert await orchestrator.get_user_orders(USER) == []
    first = await orchestrator.create_order(USER, [OrderItem(p1.id, 1, Decimal("10.00"))])
    second = await orchestrator.create_order(USER, [OrderItem(p1.id, 1, Decimal("10.00"))])
    await orchestrator.create_order(uuid.uuid4(), [OrderItem(p1.id, 1, Decimal("10.00"))])
    assert [o.id for o in await orchestrator.get_user_orders(USER)] == [first.id, second.id]


@pytest.mark.asyncio
async def test_ship_then_deliver_and_terminal_state():
    shipping = ShippingNotifierStub()
    orchestrator, _, p1 = await make(shipping=shipping)
    order = await orchestrator.create_order(USER, [OrderItem(p1.id, 1, Decimal("10.00"))])

    shipped = await orchestrator.update_order_status(order.id, OrderStatus.SHIPPED)
    assert shipped.status == OrderStatus.SHIPPED
    assert shipping.notified == [order.id]

    delivered = await orchestrator.update_order_status(order.id, "delivered")
    assert delivered.status == OrderStatus.DELIVERED

    with pytest.raises(InvalidTransition):
        await orchestrator.update_order_status(order.id, OrderStatus.PENDING)
    assert (await orchestrator.get_order(order.id)).status == OrderStatus.DELIVERED


@pytest.mark.asyncio
async def test_cancelled_order_cannot_move():
    orchestrator, _, p1 = await make(payments=PaymentGatewayStub(approve=False))
    with pytest.raises(PaymentFailed) as e:
        await orchestrator.create_order(USER, [OrderItem(p1.id, 1, Decimal("10.00"))])
    with pytest.raises(InvalidTransition):
        await orchestrator.update_order_status(e.value.entity_id, OrderStatus.PROCESSING)


@pytest.mark.asyncio
async def test_skipping_a_state_is_rejected():
    orchestrator, _, p1 = await make()
    order = await orchestrator.create_order(USER, [OrderItem(p1.id, 1, Decimal("10.00"))])
    with pytest.raises(InvalidTransition):
        await orchestrator.update_order_status(order.id, OrderStatus.DELIVERED)


@pytest.mark.asyncio
async def test_update_unknown_order_or_status():
    orchestrator, _, p1 = await make()
    with pytest.raises(OrderNotFound):
        await orchestrator.update_order_status(uuid.uuid4(), OrderStatus.SHIPPED)
    order = await orchestrator.create_order(USER, [OrderItem(p1.id, 1, Decimal("10.00"))])
    with pytest.raises(InvalidInput):
        await orchestrator.update_order_status(order.id, "lost")


@pytest.mark.asyncio
async def test_shipping_failure_keeps_status_change():
    orchestrator, store, p1 = await make(shipping=ShippingRaising())
    order = await orchestrator.create_order(USER, [OrderItem(p1.id, 1, Decimal("10.00"))])
    shipped = await orchestrator.update_order_status(order.id, OrderStatus.SHIPPED)
    assert shipped.status == OrderStatus.SHIPPED
    assert (await store.get_order(order.id)).status == OrderStatus.SHIPPED
