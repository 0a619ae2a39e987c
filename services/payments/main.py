"""Payment gateway simulator built with FastAPI.

Stands in for the external payment provider and the shipping webhook that
the orders gateway talks to. Charges are approved at random with probability
``PAYMENTS_APPROVAL_RATE`` (default 0.95) and only up to
``PAYMENTS_MAX_AMOUNT``; every attempt is persisted through
``repo.PaymentsRepo``.

Run from the ``services`` directory with ``python -m payments.main``.
"""

import logging
import os
import random
import uuid
from decimal import Decimal
from typing import Annotated, Optional

import uvicorn
from fastapi import FastAPI, Header, HTTPException, Request
from pydantic import BaseModel, Field
from pythonjsonlogger import jsonlogger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from .repo import IdempotencyKey, PaymentOutcome, PaymentsRepo, canonical_hash, get_session

app = FastAPI(title="Payment Gateway Simulator")

# logger JSON
logger = logging.getLogger("payments")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)


def _approval_rate() -> float:
    return float(os.getenv("PAYMENTS_APPROVAL_RATE", "0.95"))


def _max_amount() -> Decimal:
    return Decimal(os.getenv("PAYMENTS_MAX_AMOUNT", "10000"))


def _decide(amount: Decimal) -> bool:
    return amount <= _max_amount() and random.random() < _approval_rate()


class PaymentRequest(BaseModel):
    """Request body for the payments endpoint.

    Attributes:
        order_id: Order being paid.
        amount: Positive amount, two decimals at most.
    """
    order_id: uuid.UUID
    amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)


class PaymentResponse(BaseModel):
    approved: bool
    payment_id: uuid.UUID


class ShippingNotice(BaseModel):
    order_id: uuid.UUID
    user_id: uuid.UUID
    status: str


def _answer(outcome: PaymentOutcome, order_id: uuid.UUID) -> PaymentResponse:
    """Approved -> 200 body; declined -> 402 carrying the payment id."""
    logger.info(
        "payment decided",
        extra={"order_id": str(order_id), "payment_id": str(outcome.payment_id), "approved": outcome.approved},
    )
    if not outcome.approved:
        raise HTTPException(
            status_code=402,
            detail={"approved": False, "payment_id": str(outcome.payment_id), "detail": "PAYMENT_DECLINED"},
        )
    return PaymentResponse(approved=True, payment_id=outcome.payment_id)


@app.get("/health")
def health():
    return {"ok": True}


@app.post("/payments", response_model=PaymentResponse)
def charge(
    req: PaymentRequest,
    idempotency_key: Annotated[Optional[str], Header(alias="Idempotency-Key")] = None,
):
    """Charge an order, at most once per ``Idempotency-Key``.

    The first request with a key is decided and recorded; a retry with the
    same key and payload gets the recorded decision back, a retry with a
    different payload gets 409.

    Raises:
        HTTPException: 402 when declined, 409 on an idempotency conflict or
            while the first request with the key is undecided, 500 when the
            key record cannot be read back.
    """
    payload_hash = canonical_hash(req.model_dump(mode="json"))
    repo = PaymentsRepo()

    if not idempotency_key:
        return _answer(repo.create_payment(req.order_id, req.amount, _decide(req.amount)), req.order_id)

    with get_session() as s:
        try:
            s.add(IdempotencyKey(key=idempotency_key, request_hash=payload_hash))
            s.commit()
        except IntegrityError:
            s.rollback()
            rec = s.execute(
                select(IdempotencyKey).where(IdempotencyKey.key == idempotency_key).with_for_update()
            ).scalars().first()
            if not rec:
                raise HTTPException(status_code=500, detail="IDEMPOTENCY_LOOKUP_ERROR")
            if rec.request_hash != payload_hash:
                raise HTTPException(status_code=409, detail="IDEMPOTENCY_CONFLICT")
            outcome = repo.get_payment(rec.payment_id) if rec.payment_id else None
            if outcome is None:
                # The first request with this key has not recorded its decision yet
                raise HTTPException(status_code=409, detail="IDEMPOTENCY_IN_PROGRESS")
            return _answer(outcome, req.order_id)

        outcome = repo.create_payment(req.order_id, req.amount, _decide(req.amount))
        rec = s.get(IdempotencyKey, idempotency_key)
        rec.payment_id = outcome.payment_id
        s.commit()

    return _answer(outcome, req.order_id)


@app.post("/shipping-notifications", status_code=202)
def notify_shipping(notice: ShippingNotice):
    logger.info("shipping order", extra={"order_id": str(notice.order_id), "status": notice.status})
    return {"accepted": True}


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    try:
        response = await call_next(request)
    finally:
        logger.info("request handled", extra={"request_id": rid, "path": request.url.path, "method": request.method})
    response.headers["X-Request-ID"] = rid
    return response


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "9002")), log_level=os.getenv("LOG_LEVEL", "info"))
