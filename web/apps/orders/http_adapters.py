"""HTTP adapter clients with circuit breakers, timeouts and context headers.

This module implements the payment and shipping ports over HTTP using
``httpx.AsyncClient``. It adds:

- Request correlation: propagates ``X-Request-ID`` from the ContextVar set by
    the gateway middleware.
- A circuit breaker per downstream service (payments, shipping) to avoid
    hammering unhealthy dependencies, with HALF_OPEN probing after a timeout.
- Payments are never retried: the order id is sent as ``Idempotency-Key`` and
    a single failure is final for that order.
- Shipping notifications are best-effort and retried with exponential backoff
    on transport errors and 5xx.
"""

import asyncio
import logging
import threading
import time
import uuid
from decimal import Decimal
from enum import Enum
from typing import Optional

import httpx
from django.conf import settings

from gateway.middleware import REQUEST_ID_CTX

from .domain import Order, PaymentGatewayPort, ShippingNotifierPort

logger = logging.getLogger("orders.http")


# ---------------- Circuit Breaker ---------------- #

class CircuitOpenError(RuntimeError):
    """Raised instead of calling a downstream whose circuit is open."""


class BreakerState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """Circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    Transitions:
    - CLOSED -> OPEN when consecutive failures reach ``fail_threshold``.
    - OPEN -> HALF_OPEN once ``reset_timeout`` seconds have passed.
    - HALF_OPEN -> CLOSED on a successful probe, back to OPEN on a failed
      one. Only one probe may be in flight.

    Thread-safe; the gateway runs views in several threads.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float, clock=time.monotonic):
        self.name = name
        self._clock = clock
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = BreakerState.CLOSED
        self._opened_at = 0.0
        self._probe_in_flight = False

    @property
    def state(self) -> BreakerState:
        with self._lock:
            if self._state is BreakerState.OPEN and self._clock() - self._opened_at >= self.reset_timeout:
                self._state = BreakerState.HALF_OPEN
                self._probe_in_flight = False
            return self._state

    def before_call(self) -> BreakerState:
        """Admit a call or refuse it.

        Raises:
            CircuitOpenError: If the circuit is OPEN, or HALF_OPEN with a
                probe already running.
        """
        with self._lock:
            state = self.state
            if state is BreakerState.OPEN:
                raise CircuitOpenError(f"{self.name}: CIRCUIT_OPEN")
            if state is BreakerState.HALF_OPEN:
                if self._probe_in_flight:
                    raise CircuitOpenError(f"{self.name}: CIRCUIT_HALF_OPEN_BUSY")
                self._probe_in_flight = True
            return state

    def on_success(self):
        with self._lock:
            self._failures = 0
            self._state = BreakerState.CLOSED
            self._probe_in_flight = False

    def on_failure(self):
        with self._lock:
            self._failures += 1
            reopen = self._state is BreakerState.HALF_OPEN
            if (reopen or self._failures >= self.fail_threshold) and self._state is not BreakerState.OPEN:
                self._state = BreakerState.OPEN
                self._opened_at = self._clock()
                self._probe_in_flight = False
                logger.warning("circuit opened", extra={"downstream": self.name, "failures": self._failures})

    def on_finish(self):
        with self._lock:
            if self._state is BreakerState.HALF_OPEN:
                self._probe_in_flight = False

    def reset(self):
        self.on_success()


def _breaker(name: str) -> CircuitBreaker:
    return CircuitBreaker(
        name,
        getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
        getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
    )


# Per-service instances
payments_breaker = _breaker("payments")
shipping_breaker = _breaker("shipping")


# ---------------- Helpers ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    """Headers for an outgoing call: ``X-Request-ID`` plus ``extra``."""
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _retry_policy() -> tuple[int, float, float]:
    """Return (max_attempts, backoff_base_seconds, max_sleep_seconds)."""
    return (
        max(1, getattr(settings, "HTTP_RETRY_MAX", 3)),
        getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15),
        getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5),
    )


def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    # Retry only on transport errors or 5xx
    if exc is not None:
        return True
    return resp is not None and 500 <= resp.status_code < 600


# ---------------- Payments Adapter ---------------- #

class HttpPaymentGateway(PaymentGatewayPort):
    """HTTP client for the payment gateway, guarded by a circuit breaker.

    Business mappings:
    - 200 -> the ``approved`` flag of the body
    - 402 -> False (declined), not counted as a circuit failure
    - anything else -> counted as a failure and raised
    """

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = base_url or settings.PAYMENTS_BASE_URL
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS

    async def process_payment(self, order_id: uuid.UUID, amount: Decimal) -> bool:
        """Ask the gateway to charge ``amount`` for ``order_id``.

        Raises:
            CircuitOpenError: If the payments circuit is open.
            httpx.RequestError: For network/transport errors.
            httpx.HTTPStatusError: For unexpected non-2xx responses.
        """
        payload = {"order_id": str(order_id), "amount": str(amount)}
        state = payments_breaker.before_call()
        headers = _request_headers({"Idempotency-Key": str(order_id), "X-Circuit-State": state.value})

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                try:
                    resp = await client.post(f"{self.base_url}/payments", json=payload, headers=headers)
                except httpx.RequestError:
                    payments_breaker.on_failure()
                    raise
                if resp.status_code == 200:
                    payments_breaker.on_success()
                    data = resp.json()
                    logger.info(
                        "payment answered",
                        extra={"order_id": str(order_id), "payment_id": data.get("payment_id")},
                    )
                    return bool(data.get("approved", False))
                if resp.status_code == 402:
                    payments_breaker.on_success()  # business outcome, not a circuit failure
                    return False
                payments_breaker.on_failure()
                resp.raise_for_status()
                return False
        finally:
            payments_breaker.on_finish()


# ---------------- Shipping Adapter ---------------- #

class HttpShippingNotifier(ShippingNotifierPort):
    """HTTP client posting shipping notices, with retries and a breaker."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = base_url or settings.SHIPPING_BASE_URL
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS

    async def notify_shipping(self, order: Order) -> bool:
        """Post a shipping notice for ``order``.

        Retries transport errors and 5xx with exponential backoff. Other
        non-2xx answers return False without retrying.

        Raises:
            CircuitOpenError: If the shipping circuit is open.
            httpx.RequestError: For transport errors after the last attempt.
            httpx.HTTPStatusError: For 5xx after the last attempt.
        """
        payload = {"order_id": str(order.id), "user_id": str(order.user_id), "status": order.status.value}
        max_attempts, backoff, cap = _retry_policy()
        attempts = 0

        state = shipping_breaker.before_call()
        headers = _request_headers({"X-Circuit-State": state.value, "X-Retry-Count": "0"})

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                while True:
                    resp = None
                    exc = None
                    try:
                        resp = await client.post(
                            f"{self.base_url}/shipping-notifications", json=payload, headers=headers
                        )
                        if 200 <= resp.status_code < 300:
                            shipping_breaker.on_success()
                            return True
                        if not _should_retry(resp, None):
                            shipping_breaker.on_success()
                            return False
                    except httpx.RequestError as e:
                        exc = e

                    attempts += 1
                    headers["X-Retry-Count"] = str(attempts)
                    if attempts >= max_attempts:
                        shipping_breaker.on_failure()
                        if exc:
                            raise exc
                        resp.raise_for_status()
                        return False

                    await asyncio.sleep(min(backoff * (2 ** (attempts - 1)), cap))
        finally:
            shipping_breaker.on_finish()
