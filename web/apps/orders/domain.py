"""Domain models, ports and orchestrator for orders.

This module contains the immutable entities of the order lifecycle (users,
products, orders and their line items), the order status state machine, the
protocol definitions (ports) for the collaborators the orchestrator drives
(store, payment gateway, shipping notifier), and the ``OrderOrchestrator``
that sequences them.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Iterable, Protocol, Sequence

from .errors import (
    InvalidInput,
    InvalidTransition,
    OrderNotFound,
    PaymentFailed,
)

logger = logging.getLogger("orders")

CENT = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_money(value) -> Decimal:
    """Normalize ``value`` to a Decimal quantized to cents.

    Raises:
        InvalidInput: If the value is not a finite number.
    """
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
        return amount.quantize(CENT)
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidInput(detail=f"invalid amount {value!r}")


def _to_uuid(value) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise InvalidInput(detail=f"invalid id {value!r}")


# ---- Enums ----
class OrderStatus(str, Enum):
    """Closed set of order statuses.

    Legal moves are listed in ``_TRANSITIONS``; ``delivered`` and
    ``cancelled`` are terminal.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    def can_transition_to(self, target: "OrderStatus") -> bool:
        return OrderStatus(target) in _TRANSITIONS[self]

    @property
    def is_terminal(self) -> bool:
        return not _TRANSITIONS[self]


_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


class UserRole(str, Enum):
    ADMIN = "admin"
    CUSTOMER = "customer"


# ---- Entities / DTOs ----
@dataclass(frozen=True)
class User:
    id: uuid.UUID
    email: str
    name: str
    role: UserRole = UserRole.CUSTOMER
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if not self.name:
            raise InvalidInput(self.id, "user name is required")
        if "@" not in self.email:
            raise InvalidInput(self.id, f"invalid email {self.email!r}")
        object.__setattr__(self, "role", UserRole(self.role))


@dataclass(frozen=True)
class Product:
    """A sellable product.

    Attributes:
        price: Current list price, positive.
        stock: Units available. Never negative; stores refuse any write
            that would take it below zero.
    """

    id: uuid.UUID
    name: str
    price: Decimal
    stock: int
    description: str = ""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        object.__setattr__(self, "price", to_money(self.price))
        if not self.name:
            raise InvalidInput(self.id, "product name is required")
        if self.price <= 0:
            raise InvalidInput(self.id, "price must be positive")
        if self.stock < 0:
            raise InvalidInput(self.id, "stock cannot be negative")

    def with_stock(self, stock: int) -> "Product":
        return replace(self, stock=stock, updated_at=utcnow())


@dataclass(frozen=True)
class OrderItem:
    """A single line item in an order.

    Attributes:
        product_id: Product being bought.
        quantity: Number of units, positive.
        price: Unit price captured when the order was created. Later price
            changes on the product do not affect it.
    """

    product_id: uuid.UUID
    quantity: int
    price: Decimal

    def __post_init__(self):
        object.__setattr__(self, "product_id", _to_uuid(self.product_id))
        object.__setattr__(self, "price", to_money(self.price))
        if not isinstance(self.quantity, int) or self.quantity <= 0:
            raise InvalidInput(self.product_id, "quantity must be a positive integer")
        if self.price <= 0:
            raise InvalidInput(self.product_id, "price must be positive")

    @property
    def subtotal(self) -> Decimal:
        return self.price * self.quantity


def order_total(items: Iterable[OrderItem]) -> Decimal:
    """Sum of ``price * quantity`` over ``items``, in cents."""
    return sum((i.subtotal for i in items), Decimal("0")).quantize(CENT)


def quantities_by_product(items: Iterable[OrderItem]) -> dict[uuid.UUID, int]:
    """Units requested per product, with repeated lines merged, sorted by id."""
    needed: dict[uuid.UUID, int] = {}
    for item in items:
        needed[item.product_id] = needed.get(item.product_id, 0) + item.quantity
    return dict(sorted(needed.items()))


@dataclass(frozen=True)
class Order:
    """Container for order data.

    Orders are immutable; ``with_status`` returns a new instance. The total is
    checked against the items every time an instance is built, so the two can
    never drift apart.
    """

    id: uuid.UUID
    user_id: uuid.UUID
    items: tuple[OrderItem, ...]
    total: Decimal
    status: OrderStatus = OrderStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        object.__setattr__(self, "items", tuple(self.items))
        object.__setattr__(self, "total", to_money(self.total))
        object.__setattr__(self, "status", OrderStatus(self.status))
        if self.total != order_total(self.items):
            raise InvalidInput(self.id, "total does not match items")

    def with_status(self, status: OrderStatus) -> "Order":
        return replace(self, status=OrderStatus(status), updated_at=utcnow())


# ---- Ports (DIP) ----
class StorePort(Protocol):
    """Port describing the persistence operations used by the orchestrator.

    Implementations must make writes to a single order or product
    linearizable. ``reserve_stock`` in particular must check and decrement
    every product atomically.
    """

    async def create_order(
        self, user_id: uuid.UUID, items: Sequence[OrderItem], total: Decimal, status: OrderStatus
    ) -> Order:
        raise NotImplementedError()

    async def get_order(self, order_id: uuid.UUID) -> Order | None:
        raise NotImplementedError()

    async def get_user_orders(self, user_id: uuid.UUID) -> list[Order]:
        raise NotImplementedError()

    async def update_order_status(
        self, order_id: uuid.UUID, status: OrderStatus, expected: OrderStatus | None = None
    ) -> Order | None:
        """Set the status of an order.

        Args:
            order_id: Order to update.
            status: New status.
            expected: When given, the write only happens if the stored status
                still equals it (compare-and-swap).

        Returns:
            The updated order, or None if the order does not exist.

        Raises:
            InvalidTransition: If ``expected`` no longer matches.
        """
        raise NotImplementedError()

    async def get_product(self, product_id: uuid.UUID) -> Product | None:
        raise NotImplementedError()

    async def update_product_stock(self, product_id: uuid.UUID, stock: int) -> Product | None:
        raise NotImplementedError()

    async def reserve_stock(self, items: Sequence[OrderItem]) -> list[Product]:
        """Decrement stock for every item, all or nothing.

        Raises:
            ProductNotFound: If any referenced product does not exist.
            InsufficientStock: If any product has fewer units than requested.
        """
        raise NotImplementedError()


class PaymentGatewayPort(Protocol):
    """Port describing payment authorization.

    Implementations return True when the charge is approved and False when
    it is declined. They may also raise on transport errors.
    """

    async def process_payment(self, order_id: uuid.UUID, amount: Decimal) -> bool:
        raise NotImplementedError()


class ShippingNotifierPort(Protocol):
    """Best-effort notification sent when an order ships."""

    async def notify_shipping(self, order: Order) -> bool:
        raise NotImplementedError()


# ---- Orchestrator ----
class OrderOrchestrator:
    """Sequences store writes, payment and stock changes for an order.

    The orchestrator keeps no state between calls; every method reads what it
    needs from the store and returns its result directly. Errors are
    ``OrderError`` subclasses and are never swallowed.
    """

    def __init__(
        self,
        store: StorePort,
        payments: PaymentGatewayPort,
        shipping: ShippingNotifierPort,
        payment_timeout: float | None = None,
    ):
        """Initialize the orchestrator with its collaborators.

        Args:
            store: StorePort holding users, products and orders.
            payments: PaymentGatewayPort used to charge order totals.
            shipping: ShippingNotifierPort told about shipped orders.
            payment_timeout: Seconds to wait for the gateway; a timeout is
                handled like a declined payment. None waits forever.
        """
        self.store = store
        self.payments = payments
        self.shipping = shipping
        self.payment_timeout = payment_timeout

    async def create_order(self, user_id: uuid.UUID, items: Sequence[OrderItem]) -> Order:
        """Create an order: persist, charge payment, then take stock.

        The order is written as ``pending`` before payment so every payment
        attempt leaves a record. A failed payment cancels that record and
        raises; a successful one moves it to ``processing`` and then
        decrements stock for all items in one atomic store call.

        Args:
            user_id: Buyer.
            items: Line items with the unit price to charge.

        Returns:
            The order in ``processing`` status.

        Raises:
            InvalidInput: If ``items`` is empty or malformed.
            PaymentFailed: If the gateway declined, raised or timed out. The
                order has been cancelled and stock is untouched.
            ProductNotFound: If an item references an unknown product.
            InsufficientStock: If any product cannot cover its quantity. No
                stock was changed; the order stays ``processing``.
        """
        items = list(items)
        if not items:
            raise InvalidInput(detail="order has no items")
        for item in items:
            if not isinstance(item, OrderItem):
                raise InvalidInput(detail=f"unexpected item {item!r}")

        # 1) Persist as pending
        total = order_total(items)
        order = await self.store.create_order(_to_uuid(user_id), items, total, OrderStatus.PENDING)
        logger.info(
            "order created",
            extra={"order_id": str(order.id), "user_id": str(order.user_id), "amount": str(total)},
        )

        # 2) Charge payment, cancel on failure
        if not await self._charge(order):
            cancelled = await self.store.update_order_status(
                order.id, OrderStatus.CANCELLED, expected=OrderStatus.PENDING
            )
            logger.warning("order cancelled after payment failure", extra={"order_id": str(order.id)})
            raise PaymentFailed(order.id, order=cancelled)

        processing = await self.store.update_order_status(
            order.id, OrderStatus.PROCESSING, expected=OrderStatus.PENDING
        )
        if processing is None:
            raise OrderNotFound(order.id)

        # 3) Take stock
        await self.store.reserve_stock(processing.items)
        logger.info("order processing", extra={"order_id": str(order.id), "status": processing.status.value})
        return processing

    async def get_order(self, order_id: uuid.UUID) -> Order | None:
        """Return the order, or None when it does not exist.

        An id that is not a UUID cannot name a stored order, so it is a miss
        as well.
        """
        try:
            order_id = _to_uuid(order_id)
        except InvalidInput:
            return None
        return await self.store.get_order(order_id)

    async def get_user_orders(self, user_id: uuid.UUID) -> list[Order]:
        try:
            user_id = _to_uuid(user_id)
        except InvalidInput:
            return []
        return list(await self.store.get_user_orders(user_id))

    async def update_order_status(self, order_id: uuid.UUID, status: OrderStatus | str) -> Order:
        """Move an order along the status state machine.

        Raises:
            InvalidInput: If ``status`` is not a known status.
            OrderNotFound: If the order does not exist.
            InvalidTransition: If the move is not allowed from the current
                status, or the order changed concurrently.
        """
        try:
            status = OrderStatus(status)
        except ValueError:
            raise InvalidInput(order_id, f"unknown status {status!r}")
        order_id = _to_uuid(order_id)

        current = await self.store.get_order(order_id)
        if current is None:
            raise OrderNotFound(order_id)
        if not current.status.can_transition_to(status):
            raise InvalidTransition(order_id, f"{current.status.value} -> {status.value}")

        updated = await self.store.update_order_status(order_id, status, expected=current.status)
        if updated is None:
            raise OrderNotFound(order_id)
        logger.info(
            "order status changed",
            extra={"order_id": str(order_id), "status": status.value, "previous": current.status.value},
        )

        if status is OrderStatus.SHIPPED:
            await self._notify_shipping(updated)
        return updated

    async def _charge(self, order: Order) -> bool:
        # Any error or timeout from the gateway counts as a decline.
        try:
            call = self.payments.process_payment(order.id, order.total)
            if self.payment_timeout is not None:
                return bool(await asyncio.wait_for(call, timeout=self.payment_timeout))
            return bool(await call)
        except asyncio.TimeoutError:
            logger.warning("payment timed out", extra={"order_id": str(order.id)})
        except Exception:
            logger.exception("payment gateway error", extra={"order_id": str(order.id)})
        return False

    async def _notify_shipping(self, order: Order) -> None:
        try:
            sent = await self.shipping.notify_shipping(order)
        except Exception:
            logger.exception("shipping notification failed", extra={"order_id": str(order.id)})
            return
        if not sent:
            logger.warning("shipping notification not accepted", extra={"order_id": str(order.id)})
