"""Wiring helpers for the order orchestrator.

``get_order_orchestrator`` returns an ``OrderOrchestrator`` backed by the
Django store. Payment and shipping go through the HTTP clients when
``settings.USE_HTTP_ADAPTERS`` is truthy, and through the in-process stubs
otherwise (tests, local development).

``get_context_recorder`` wraps it with the process-wide
``OrchestratorContext`` served by the telemetry endpoint.
"""

from django.conf import settings

from .adapters import PaymentGatewayStub, ShippingNotifierStub
from .context import ContextRecorder, OrchestratorContext
from .domain import OrderOrchestrator
from .http_adapters import HttpPaymentGateway, HttpShippingNotifier
from .repository import DjangoStore

ORDER_CONTEXT = OrchestratorContext()


def get_order_orchestrator() -> OrderOrchestrator:
    if getattr(settings, "USE_HTTP_ADAPTERS", True):
        payments, shipping = HttpPaymentGateway(), HttpShippingNotifier()
    else:
        payments, shipping = PaymentGatewayStub(), ShippingNotifierStub()

    return OrderOrchestrator(
        store=DjangoStore(),
        payments=payments,
        shipping=shipping,
        payment_timeout=getattr(settings, "PAYMENT_TIMEOUT_SECS", None),
    )


def get_context_recorder() -> ContextRecorder:
    return ContextRecorder(get_order_orchestrator(), ORDER_CONTEXT)
