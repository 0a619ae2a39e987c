"""Idempotency keys for order creation requests.

The core never retries; callers that want to retry ``POST /api/orders/``
safely send an ``Idempotency-Key`` header. The first request with a key is
processed and its response stored; a retry with the same payload gets the
stored response back, a retry with a different payload is a conflict, and a
retry that arrives while the first request is still running is told so.
"""

import hashlib
import json

from django.db import IntegrityError, transaction

from .models import IdempotencyKey

IN_FLIGHT = 0


def request_hash(payload: dict) -> str:
    """Stable SHA-256 of a JSON payload (sorted keys, compact separators)."""
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


@transaction.atomic
def get_or_create_idempotent(key: str, payload: dict) -> tuple[bool, IdempotencyKey]:
    """Get-or-create the idempotency record for ``key``.

    Returns:
        ``(existing, rec)``: ``existing`` is False when the record was created
        by this call (the caller must ``finalize`` it) and True when a stored
        response is available for replay.

    Raises:
        ValueError: ``"IDEMPOTENCY_CONFLICT"`` when the key was used with a
            different payload, ``"IDEMPOTENCY_IN_PROGRESS"`` when the first
            request has not finished yet.
    """
    h = request_hash(payload)

    try:
        # Nested savepoint: an IntegrityError only rolls back this block.
        with transaction.atomic():
            rec = IdempotencyKey.objects.create(
                key=key, request_hash=h, response_status=IN_FLIGHT, response_body={}
            )
            return False, rec
    except IntegrityError:
        rec = IdempotencyKey.objects.select_for_update().get(key=key)
        if rec.request_hash != h:
            raise ValueError("IDEMPOTENCY_CONFLICT")
        if rec.response_status == IN_FLIGHT:
            raise ValueError("IDEMPOTENCY_IN_PROGRESS")
        return True, rec


def finalize(rec: IdempotencyKey, status_code: int, body: dict, order_id=None) -> None:
    """Store the final response so later retries can replay it."""
    rec.response_status = status_code
    rec.response_body = body
    if order_id is not None:
        rec.order_id = order_id
    rec.save(update_fields=["response_status", "response_body", "order_id"])
