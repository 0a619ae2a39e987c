"""In-process adapters for the orders domain ports.

These implement ``StorePort``, ``PaymentGatewayPort`` and
``ShippingNotifierPort`` without any network or database access. They are
used by unit tests and local development where deterministic behavior is
useful and external services are not required.
"""

import asyncio
import logging
import uuid
from collections import defaultdict
from contextlib import AsyncExitStack, asynccontextmanager
from decimal import Decimal
from typing import Sequence

from .domain import (
    Order,
    OrderItem,
    OrderStatus,
    PaymentGatewayPort,
    Product,
    ShippingNotifierPort,
    StorePort,
    User,
    UserRole,
    quantities_by_product,
)
from .errors import InsufficientStock, InvalidInput, InvalidTransition, ProductNotFound

logger = logging.getLogger("orders")


class InMemoryStore(StorePort):
    """Dict-backed store with one ``asyncio.Lock`` per record id in use.

    Entities are immutable, so the maps only ever hold snapshots; every write
    replaces the entry under the lock of its id. Multi-product stock
    reservations take the product locks in sorted id order.

    Args:
        latency: Seconds to sleep inside each locked section, to mimic a
            store that yields to the event loop between read and write.
    """

    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self._users: dict[uuid.UUID, User] = {}
        self._products: dict[uuid.UUID, Product] = {}
        self._orders: dict[uuid.UUID, Order] = {}
        # Locks exist only while some task holds or waits for them.
        self._locks: dict[uuid.UUID, asyncio.Lock] = {}
        self._lock_users: defaultdict[uuid.UUID, int] = defaultdict(int)

    async def _io(self):
        await asyncio.sleep(self.latency)

    @asynccontextmanager
    async def _locked(self, *ids: uuid.UUID):
        """Hold the locks of ``ids``, taken in sorted order."""
        ids = sorted(set(ids))
        for key in ids:
            self._lock_users[key] += 1
        try:
            async with AsyncExitStack() as stack:
                for key in ids:
                    await stack.enter_async_context(self._locks.setdefault(key, asyncio.Lock()))
                yield
        finally:
            for key in ids:
                self._lock_users[key] -= 1
                if not self._lock_users[key]:
                    del self._lock_users[key]
                    del self._locks[key]

    # ---- users ----
    async def create_user(self, email: str, name: str, role: UserRole = UserRole.CUSTOMER) -> User:
        if await self.find_user_by_email(email) is not None:
            raise InvalidInput(detail=f"email already registered: {email}")
        user = User(id=uuid.uuid4(), email=email, name=name, role=role)
        self._users[user.id] = user
        return user

    async def get_user(self, user_id: uuid.UUID) -> User | None:
        return self._users.get(user_id)

    async def find_user_by_email(self, email: str) -> User | None:
        for user in self._users.values():
            if user.email.lower() == email.lower():
                return user
        return None

    # ---- products ----
    async def create_product(self, name: str, price: Decimal, stock: int, description: str = "") -> Product:
        product = Product(id=uuid.uuid4(), name=name, price=price, stock=stock, description=description)
        self._products[product.id] = product
        return product

    async def get_product(self, product_id: uuid.UUID) -> Product | None:
        return self._products.get(product_id)

    async def update_product_stock(self, product_id: uuid.UUID, stock: int) -> Product | None:
        if stock < 0:
            raise InvalidInput(product_id, "stock cannot be negative")
        async with self._locked(product_id):
            current = self._products.get(product_id)
            if current is None:
                return None
            await self._io()
            updated = current.with_stock(stock)
            self._products[product_id] = updated
            return updated

    async def reserve_stock(self, items: Sequence[OrderItem]) -> list[Product]:
        needed = quantities_by_product(items)
        async with self._locked(*needed):
            # Check every product before writing any of them.
            for product_id, quantity in needed.items():
                product = self._products.get(product_id)
                if product is None:
                    raise ProductNotFound(product_id)
                if product.stock < quantity:
                    raise InsufficientStock(product_id, f"requested {quantity}, available {product.stock}")

            await self._io()
            updated = []
            for product_id, quantity in needed.items():
                product = self._products[product_id]
                product = product.with_stock(product.stock - quantity)
                self._products[product_id] = product
                updated.append(product)
            return updated

    # ---- orders ----
    async def create_order(
        self, user_id: uuid.UUID, items: Sequence[OrderItem], total: Decimal, status: OrderStatus
    ) -> Order:
        order = Order(id=uuid.uuid4(), user_id=user_id, items=tuple(items), total=total, status=status)
        await self._io()
        self._orders[order.id] = order
        return order

    async def get_order(self, order_id: uuid.UUID) -> Order | None:
        return self._orders.get(order_id)

    async def get_user_orders(self, user_id: uuid.UUID) -> list[Order]:
        orders = [o for o in self._orders.values() if o.user_id == user_id]
        return sorted(orders, key=lambda o: o.created_at)

    async def update_order_status(
        self, order_id: uuid.UUID, status: OrderStatus, expected: OrderStatus | None = None
    ) -> Order | None:
        async with self._locked(order_id):
            current = self._orders.get(order_id)
            if current is None:
                return None
            if expected is not None and current.status != expected:
                raise InvalidTransition(order_id, f"expected {expected.value}, found {current.status.value}")
            await self._io()
            updated = current.with_status(status)
            self._orders[order_id] = updated
            return updated


class PaymentGatewayStub(PaymentGatewayPort):
    """Stub implementation of ``PaymentGatewayPort``.

    Approves charges with a positive amount unless built with
    ``approve=False``. Every call is recorded in ``calls``.

    Args:
        approve: Outcome for positive amounts.
        delay: Seconds to sleep before answering.
    """

    def __init__(self, approve: bool = True, delay: float = 0.0):
        self.approve = approve
        self.delay = delay
        self.calls: list[tuple[uuid.UUID, Decimal]] = []

    async def process_payment(self, order_id: uuid.UUID, amount: Decimal) -> bool:
        self.calls.append((order_id, amount))
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.approve and amount > 0


class ShippingNotifierStub(ShippingNotifierPort):
    """Records shipped orders and logs them instead of calling anyone."""

    def __init__(self):
        self.notified: list[uuid.UUID] = []

    async def notify_shipping(self, order: Order) -> bool:
        self.notified.append(order.id)
        logger.info("shipping order", extra={"order_id": str(order.id)})
        return True
