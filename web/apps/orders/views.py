"""HTTP views for the orders app.

Views are kept small: they validate requests with Pydantic, map them to
domain values, call the orchestrator (through the ``ContextRecorder`` so the
telemetry snapshot stays current) and render the result.

Domain errors map to their own status code (``OrderError.http_status``):
400 invalid input, 402 payment failed, 404 not found, 409 invalid transition,
422 insufficient stock. Anything else means a collaborator is unreachable and
becomes 503 ``UPSTREAM_UNAVAILABLE``.

Idempotency: ``POST /api/orders/`` honours an ``Idempotency-Key`` header. The
first request is processed and its response stored; retries with the same
payload replay it (with ``Idempotent-Replay: true``), retries with another
payload get 409.
"""

import logging
import uuid

from asgiref.sync import async_to_sync
from django.core.paginator import Paginator
from pydantic import ValidationError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from . import providers
from .domain import OrderItem
from .errors import OrderError, OrderNotFound, PaymentFailed
from .idempotency import finalize, get_or_create_idempotent
from .schemas import CreateOrderDTO, OrderReadDTO, UpdateStatusDTO

logger = logging.getLogger("orders.api")

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def _order_body(order) -> dict:
    return OrderReadDTO.from_order(order).model_dump(mode="json")


def _error_body(exc: OrderError) -> dict:
    body = exc.to_response()
    if isinstance(exc, PaymentFailed) and exc.order is not None:
        body["order"] = _order_body(exc.order)
    return body


class OrdersPingView(APIView):
    """Liveness endpoint for the orders module."""

    def get(self, request):
        return Response({"ok": True})


class OrdersCollectionView(APIView):
    """List a user's orders (GET) or create an order (POST)."""

    throttle_classes = [ScopedRateThrottle]

    def get_throttles(self):
        # DRF evaluates throttles in initial(), before get/post
        self.throttle_scope = "orders_list" if self.request.method == "GET" else "orders_create"
        return [throttle() for throttle in self.throttle_classes]

    def get(self, request):
        raw = request.GET.get("user_id")
        try:
            user_id = uuid.UUID(raw or "")
        except ValueError:
            return Response({"detail": "INVALID_INPUT", "reason": "user_id is required"}, status=400)

        try:
            page = int(request.GET.get("page", 1))
            page_size = int(request.GET.get("page_size", DEFAULT_PAGE_SIZE))
        except ValueError:
            return Response({"detail": "INVALID_INPUT", "reason": "page and page_size must be integers"}, status=400)
        if page < 1 or page_size < 1:
            return Response({"detail": "INVALID_INPUT", "reason": "page and page_size must be positive"}, status=400)
        page_size = min(page_size, MAX_PAGE_SIZE)

        orders = async_to_sync(providers.get_context_recorder().get_user_orders)(user_id)
        p = Paginator(orders, page_size)
        page_obj = p.get_page(page)
        return Response(
            {
                "count": p.count,
                "page": page_obj.number,
                "page_size": page_size,
                "results": [_order_body(o) for o in page_obj.object_list],
            },
            status=200,
        )

    def post(self, request):
        """Create a new order.

        Returns:
            Response: One of the following.
            - 201 with the order (status ``processing``).
            - 200/4xx replayed body when the same idempotency key and payload
              are retried.
            - 409 IDEMPOTENCY_CONFLICT / IDEMPOTENCY_IN_PROGRESS.
            - 400 for DTO validation errors or INVALID_INPUT.
            - 402 PAYMENT_FAILED, with the cancelled order.
            - 404 PRODUCT_NOT_FOUND, 422 INSUFFICIENT_STOCK.
            - 503 UPSTREAM_UNAVAILABLE.
        """
        idem_key = request.headers.get("Idempotency-Key")

        # 1) Pydantic validation
        try:
            dto = CreateOrderDTO.model_validate(request.data)
        except ValidationError as e:
            return Response({"detail": str(e)}, status=status.HTTP_400_BAD_REQUEST)

        # 2) Idempotency get-or-create
        rec = None
        if idem_key:
            try:
                existing, rec = get_or_create_idempotent(idem_key, request.data)
            except ValueError as e:
                return Response({"detail": str(e)}, status=status.HTTP_409_CONFLICT)
            if existing:
                resp = Response(rec.response_body, status=rec.response_status)
                resp["Idempotent-Replay"] = "true"
                return resp

        # 3) Domain
        items = [OrderItem(product_id=i.product_id, quantity=i.quantity, price=i.price) for i in dto.items]
        recorder = providers.get_context_recorder()
        order_id = None
        try:
            order = async_to_sync(recorder.create_order)(dto.user_id, items)
        except OrderError as e:
            status_code, body = e.http_status, _error_body(e)
            if isinstance(e, PaymentFailed):
                order_id = e.entity_id
        except Exception:
            logger.exception("order creation failed upstream")
            status_code, body = 503, {"detail": "UPSTREAM_UNAVAILABLE"}
        else:
            status_code, body, order_id = status.HTTP_201_CREATED, _order_body(order), order.id

        if rec:
            finalize(rec, status_code, body, order_id=order_id)
        return Response(body, status=status_code)


class RetrieveOrderView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_detail"

    def get(self, request, oid: uuid.UUID):
        order = async_to_sync(providers.get_context_recorder().get_order)(oid)
        if order is None:
            return Response(OrderNotFound(oid).to_response(), status=status.HTTP_404_NOT_FOUND)
        return Response(_order_body(order), status=200)


class OrderStatusView(APIView):
    """Move an order to another status: ``{"status": "shipped"}``."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_status"

    def post(self, request, oid: uuid.UUID):
        try:
            dto = UpdateStatusDTO.model_validate(request.data)
        except ValidationError as e:
            return Response({"detail": str(e)}, status=status.HTTP_400_BAD_REQUEST)

        try:
            order = async_to_sync(providers.get_context_recorder().update_order_status)(oid, dto.status)
        except OrderError as e:
            return Response(_error_body(e), status=e.http_status)
        except Exception:
            logger.exception("status update failed upstream", extra={"order_id": str(oid)})
            return Response({"detail": "UPSTREAM_UNAVAILABLE"}, status=503)
        return Response(_order_body(order), status=200)


class OrderContextView(APIView):
    """Last-observed orchestrator state, for dashboards and telemetry."""

    def get(self, request):
        return Response(providers.ORDER_CONTEXT.snapshot(), status=200)
