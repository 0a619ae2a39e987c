"""Error taxonomy for the orders domain.

Every failure raised by the orchestrator or by a Store implementation is an
``OrderError``. Subclasses carry a short error code (also used as the string
form of the exception, so ``str(exc) == "PAYMENT_FAILED"``), the HTTP status
the API layer answers with, and the id of the offending entity when there is
one.

``OrderError`` derives from ``ValueError`` so callers that only care about
"the request could not be honoured" can keep catching ``ValueError``.
"""

from typing import Any


class OrderError(ValueError):
    """Base class for domain errors.

    Attributes:
        code: Short, stable error code.
        http_status: Status code used by the HTTP views.
        entity_id: Id of the order/product the error refers to, if any.
        detail: Optional human readable detail.
    """

    code = "ORDER_ERROR"
    http_status = 400

    def __init__(self, entity_id: Any = None, detail: str | None = None):
        super().__init__(self.code)
        self.entity_id = entity_id
        self.detail = detail

    def to_response(self) -> dict:
        """Return the JSON body used by the API for this error."""
        body = {"detail": self.code}
        if self.entity_id is not None:
            body["id"] = str(self.entity_id)
        if self.detail:
            body["reason"] = self.detail
        return body


class InvalidInput(OrderError):
    """Malformed request: empty item list, non-positive quantity or price."""

    code = "INVALID_INPUT"
    http_status = 400


class OrderNotFound(OrderError):
    code = "ORDER_NOT_FOUND"
    http_status = 404


class ProductNotFound(OrderError):
    code = "PRODUCT_NOT_FOUND"
    http_status = 404


class PaymentFailed(OrderError):
    """The gateway declined, errored or timed out.

    ``order`` holds the order as it was left by the compensating
    cancellation.
    """

    code = "PAYMENT_FAILED"
    http_status = 402

    def __init__(self, entity_id: Any = None, detail: str | None = None, order=None):
        super().__init__(entity_id, detail)
        self.order = order


class InsufficientStock(OrderError):
    code = "INSUFFICIENT_STOCK"
    http_status = 422


class InvalidTransition(OrderError):
    code = "INVALID_TRANSITION"
    http_status = 409
