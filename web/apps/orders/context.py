"""Observability snapshot of the last orchestrator activity.

``OrchestratorContext`` is a cache for UI and telemetry callers: the last
order seen, the last order history read, whether an operation is in flight
and the last error. It is never a source of truth.

The orchestrator itself does not touch it. ``ContextRecorder`` wraps an
``OrderOrchestrator`` and fills the context from the values the orchestrator
returns (or the errors it raises).
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Sequence

from .domain import Order, OrderItem, OrderOrchestrator, OrderStatus
from .errors import PaymentFailed


@dataclass
class OrchestratorContext:
    current_order: Order | None = None
    order_history: list[Order] = field(default_factory=list)
    is_processing: bool = False
    error: Exception | None = None

    @contextmanager
    def track(self):
        """Mark an operation in flight; record its error, if any, and re-raise."""
        self.is_processing = True
        self.error = None
        try:
            yield self
        except Exception as exc:
            self.error = exc
            raise
        finally:
            self.is_processing = False

    def snapshot(self) -> dict:
        """Plain-data view of the context, suitable for JSON."""
        return {
            "current_order_id": str(self.current_order.id) if self.current_order else None,
            "current_order_status": self.current_order.status.value if self.current_order else None,
            "order_history_ids": [str(o.id) for o in self.order_history],
            "is_processing": self.is_processing,
            "error": str(self.error) if self.error else None,
        }


class ContextRecorder:
    """Run orchestrator operations and mirror their results into a context."""

    def __init__(self, orchestrator: OrderOrchestrator, context: OrchestratorContext | None = None):
        self.orchestrator = orchestrator
        self.context = context if context is not None else OrchestratorContext()

    async def create_order(self, user_id, items: Sequence[OrderItem]) -> Order:
        with self.context.track():
            try:
                order = await self.orchestrator.create_order(user_id, items)
            except PaymentFailed as exc:
                # Show the compensating cancellation
                if exc.order is not None:
                    self.context.current_order = exc.order
                raise
        self.context.current_order = order
        return order

    async def get_order(self, order_id) -> Order | None:
        with self.context.track():
            order = await self.orchestrator.get_order(order_id)
        # A miss clears the cached order as well.
        self.context.current_order = order
        return order

    async def get_user_orders(self, user_id) -> list[Order]:
        with self.context.track():
            orders = await self.orchestrator.get_user_orders(user_id)
        self.context.order_history = list(orders)
        return orders

    async def update_order_status(self, order_id, status: OrderStatus | str) -> Order:
        with self.context.track():
            order = await self.orchestrator.update_order_status(order_id, status)
        self.context.current_order = order
        return order
