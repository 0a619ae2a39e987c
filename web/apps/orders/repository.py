"""Repository layer persisting users, products and orders with the Django ORM.

``DjangoStore`` implements ``StorePort``. ORM access is synchronous, so each
public coroutine hands its work to ``sync_to_async`` and the domain never sees
ORM types: every method maps model rows to the frozen domain dataclasses.

Per-record linearizability comes from the database:

- stock reservations lock the product rows (``SELECT ... FOR UPDATE``)
  inside one transaction and check every product before writing any;
- status changes are a conditional ``UPDATE ... WHERE status = expected``.
"""

import uuid
from decimal import Decimal
from typing import Sequence

from asgiref.sync import sync_to_async
from django.db import IntegrityError, transaction
from django.utils import timezone

from .domain import (
    Order,
    OrderItem,
    OrderStatus,
    Product,
    StorePort,
    User,
    UserRole,
    quantities_by_product,
)
from .errors import InsufficientStock, InvalidInput, InvalidTransition, ProductNotFound
from .models import OrderModel, ProductModel, UserModel


def _to_user(obj: UserModel) -> User:
    return User(
        id=obj.id,
        email=obj.email,
        name=obj.name,
        role=UserRole(obj.role),
        created_at=obj.created_at,
        updated_at=obj.updated_at,
    )


def _to_product(obj: ProductModel) -> Product:
    return Product(
        id=obj.id,
        name=obj.name,
        description=obj.description,
        price=obj.price,
        stock=obj.stock,
        created_at=obj.created_at,
        updated_at=obj.updated_at,
    )


def _to_order(obj: OrderModel) -> Order:
    items = tuple(
        OrderItem(product_id=i["product_id"], quantity=i["quantity"], price=i["price"])
        for i in obj.items
    )
    return Order(
        id=obj.id,
        user_id=obj.user_id,
        items=items,
        total=obj.total,
        status=OrderStatus(obj.status),
        created_at=obj.created_at,
        updated_at=obj.updated_at,
    )


def _dump_items(items: Sequence[OrderItem]) -> list[dict]:
    return [
        {"product_id": str(i.product_id), "quantity": i.quantity, "price": str(i.price)}
        for i in items
    ]


class DjangoStore(StorePort):
    """Store backed by the ``users``, ``products`` and ``orders`` tables."""

    # ---- users ----
    async def create_user(self, email: str, name: str, role: UserRole = UserRole.CUSTOMER) -> User:
        return await sync_to_async(self._create_user)(email, name, UserRole(role))

    def _create_user(self, email, name, role):
        try:
            # Savepoint: a duplicate email only rolls back this insert.
            with transaction.atomic():
                obj = UserModel.objects.create(email=email, name=name, role=role.value)
        except IntegrityError:
            raise InvalidInput(detail=f"email already registered: {email}")
        obj.refresh_from_db()
        return _to_user(obj)

    async def get_user(self, user_id: uuid.UUID) -> User | None:
        return await sync_to_async(self._get_user)(user_id)

    def _get_user(self, user_id):
        obj = UserModel.objects.filter(id=user_id).first()
        return _to_user(obj) if obj else None

    async def find_user_by_email(self, email: str) -> User | None:
        return await sync_to_async(self._find_user_by_email)(email)

    def _find_user_by_email(self, email):
        obj = UserModel.objects.filter(email__iexact=email).first()
        return _to_user(obj) if obj else None

    # ---- products ----
    async def create_product(self, name: str, price: Decimal, stock: int, description: str = "") -> Product:
        # Validate through the domain type before touching the table
        draft = Product(id=uuid.uuid4(), name=name, price=price, stock=stock, description=description)
        return await sync_to_async(self._create_product)(name, draft.price, stock, description)

    def _create_product(self, name, price, stock, description):
        obj = ProductModel.objects.create(name=name, price=price, stock=stock, description=description)
        obj.refresh_from_db()
        return _to_product(obj)

    async def get_product(self, product_id: uuid.UUID) -> Product | None:
        return await sync_to_async(self._get_product)(product_id)

    def _get_product(self, product_id):
        obj = ProductModel.objects.filter(id=product_id).first()
        return _to_product(obj) if obj else None

    async def update_product_stock(self, product_id: uuid.UUID, stock: int) -> Product | None:
        if stock < 0:
            raise InvalidInput(product_id, "stock cannot be negative")
        return await sync_to_async(self._update_product_stock)(product_id, stock)

    def _update_product_stock(self, product_id, stock):
        changed = ProductModel.objects.filter(id=product_id).update(stock=stock, updated_at=timezone.now())
        if not changed:
            return None
        return _to_product(ProductModel.objects.get(id=product_id))

    async def reserve_stock(self, items: Sequence[OrderItem]) -> list[Product]:
        return await sync_to_async(self._reserve_stock)(list(items))

    @transaction.atomic
    def _reserve_stock(self, items):
        needed = quantities_by_product(items)
        rows = {
            p.id: p
            for p in ProductModel.objects.select_for_update().filter(id__in=list(needed)).order_by("id")
        }
        for product_id, quantity in needed.items():
            product = rows.get(product_id)
            if product is None:
                raise ProductNotFound(product_id)
            if product.stock < quantity:
                raise InsufficientStock(product_id, f"requested {quantity}, available {product.stock}")

        for product_id, quantity in needed.items():
            product = rows[product_id]
            product.stock -= quantity
            product.save(update_fields=["stock", "updated_at"])
        return [_to_product(rows[pid]) for pid in needed]

    # ---- orders ----
    async def create_order(
        self, user_id: uuid.UUID, items: Sequence[OrderItem], total: Decimal, status: OrderStatus
    ) -> Order:
        # Build the domain object first so a total/items mismatch never reaches the table
        Order(id=uuid.uuid4(), user_id=user_id, items=tuple(items), total=total, status=status)
        return await sync_to_async(self._create_order)(user_id, list(items), total, OrderStatus(status))

    def _create_order(self, user_id, items, total, status):
        obj = OrderModel.objects.create(
            user_id=user_id,
            items=_dump_items(items),
            total=total,
            status=status.value,
        )
        obj.refresh_from_db()
        return _to_order(obj)

    async def get_order(self, order_id: uuid.UUID) -> Order | None:
        return await sync_to_async(self._get_order)(order_id)

    def _get_order(self, order_id):
        obj = OrderModel.objects.filter(id=order_id).first()
        return _to_order(obj) if obj else None

    async def get_user_orders(self, user_id: uuid.UUID) -> list[Order]:
        return await sync_to_async(self._get_user_orders)(user_id)

    def _get_user_orders(self, user_id):
        return [_to_order(o) for o in OrderModel.objects.filter(user_id=user_id).order_by("created_at")]

    async def update_order_status(
        self, order_id: uuid.UUID, status: OrderStatus, expected: OrderStatus | None = None
    ) -> Order | None:
        return await sync_to_async(self._update_order_status)(order_id, OrderStatus(status), expected)

    def _update_order_status(self, order_id, status, expected):
        qs = OrderModel.objects.filter(id=order_id)
        if expected is not None:
            qs = qs.filter(status=OrderStatus(expected).value)
        changed = qs.update(status=status.value, updated_at=timezone.now())
        if not changed:
            current = OrderModel.objects.filter(id=order_id).first()
            if current is None:
                return None
            raise InvalidTransition(order_id, f"expected {expected.value}, found {current.status}")
        return _to_order(OrderModel.objects.get(id=order_id))
