"""SQLAlchemy repository for the payment gateway simulator.

Every charge attempt is recorded in the ``payments`` table, approved or not,
so the gateway's answer for an order can be replayed. ``idempotency_keys``
maps a client key (the order id, sent by the orders gateway) to the request
it was first used with and the payment that answered it.

The database URL comes from ``PAYMENTS_DATABASE_URL`` and defaults to a local
SQLite file.
"""

import hashlib
import json
import os
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, Numeric, String, Uuid, create_engine
from sqlalchemy.orm import DeclarativeBase, Session, mapped_column
from sqlalchemy.pool import StaticPool

DATABASE_URL = os.getenv("PAYMENTS_DATABASE_URL", "sqlite+pysqlite:///./payments.db")


def _make_engine(url: str):
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url:
            # One shared connection, or every session would see an empty database
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


engine = _make_engine(DATABASE_URL)


class Base(DeclarativeBase):
    pass


class Payment(Base):
    """A charge attempt.

    Attributes:
        id: Public payment id returned to clients.
        order_id: Order the charge was for.
        amount: Charged amount.
        approved: Gateway decision.
    """

    __tablename__ = "payments"

    id = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id = mapped_column(Uuid, nullable=False, index=True)
    amount = mapped_column(Numeric(12, 2), nullable=False)
    approved = mapped_column(Boolean, default=False, nullable=False)
    created_at = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))


class IdempotencyKey(Base):
    __tablename__ = "idempotency_keys"

    key = mapped_column(String(200), primary_key=True)
    # Canonical request hash (sha256 hex)
    request_hash = mapped_column(String(64), nullable=False)
    payment_id = mapped_column(Uuid, nullable=True)


@dataclass(frozen=True)
class PaymentOutcome:
    payment_id: uuid.UUID
    approved: bool


def canonical_hash(payload: dict) -> str:
    """SHA-256 of the JSON payload with sorted keys and compact separators."""
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


@contextmanager
def get_session():
    """Yield a session; objects stay readable after commit."""
    with Session(engine, expire_on_commit=False) as s:
        yield s


class PaymentsRepo:
    """Create and read payment records."""

    def create_payment(self, order_id: uuid.UUID, amount: Decimal, approved: bool) -> PaymentOutcome:
        with get_session() as s:
            payment = Payment(order_id=order_id, amount=amount, approved=approved)
            s.add(payment)
            s.commit()
            return PaymentOutcome(payment.id, payment.approved)

    def get_payment(self, payment_id: uuid.UUID) -> PaymentOutcome | None:
        with get_session() as s:
            payment = s.get(Payment, payment_id)
            return PaymentOutcome(payment.id, payment.approved) if payment else None

    def count_for_order(self, order_id: uuid.UUID) -> int:
        with get_session() as s:
            return s.query(Payment).filter(Payment.order_id == order_id).count()


Base.metadata.create_all(engine)
