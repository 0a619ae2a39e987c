"""Pydantic schemas for the orders API.

Request DTOs validate incoming payloads before anything reaches the domain;
``OrderReadDTO`` renders domain orders for responses.
"""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from .domain import Order, OrderStatus


class OrderItemIn(BaseModel):
    """Input schema for a single order line item.

    Attributes:
        product_id: Product being bought.
        quantity: Positive integer indicating units requested.
        price: Unit price the buyer was shown, at most two decimals.
    """

    product_id: uuid.UUID
    quantity: int = Field(gt=0)
    price: Decimal = Field(gt=0, max_digits=12, decimal_places=2)


class CreateOrderDTO(BaseModel):
    """Schema for creating an order.

    An empty ``items`` list passes this schema on purpose; the orchestrator
    rejects it with ``INVALID_INPUT``.
    """

    user_id: uuid.UUID
    items: list[OrderItemIn]


class UpdateStatusDTO(BaseModel):
    status: OrderStatus


class OrderItemOut(BaseModel):
    product_id: uuid.UUID
    quantity: int
    price: Decimal


class OrderReadDTO(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    items: list[OrderItemOut]
    total: Decimal
    status: OrderStatus
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_order(cls, order: Order) -> "OrderReadDTO":
        return cls(
            id=order.id,
            user_id=order.user_id,
            items=[
                OrderItemOut(product_id=i.product_id, quantity=i.quantity, price=i.price)
                for i in order.items
            ],
            total=order.total,
            status=order.status,
            created_at=order.created_at,
            updated_at=order.updated_at,
        )
