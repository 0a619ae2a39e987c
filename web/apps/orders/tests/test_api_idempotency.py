from decimal import Decimal

import pytest

from apps.orders import adapters
from apps.orders.models import IdempotencyKey, OrderModel, ProductModel

CREATE_URL = "/api/orders/"


@pytest.fixture
def product(db):
    return ProductModel.objects.create(name="P1", price=Decimal("10.00"), stock=5)


def order_payload(product_id, quantity=2):
    return {
        "user_id": "3f1c7c1e-2d7b-4a53-9a0e-6f0f7f0e2a11",
        "items": [{"product_id": str(product_id), "quantity": quantity, "price": "10.00"}],
    }


@pytest.mark.django_db
def test_idempotent_same_payload_returns_same_order_on_retry(client, product):
    key = "idem-same-1"
    data = order_payload(product.id)

    r1 = client.post(CREATE_URL, data=data, content_type="application/json", HTTP_IDEMPOTENCY_KEY=key)
    assert r1.status_code == 201

    r2 = client.post(CREATE_URL, data=data, content_type="application/json", HTTP_IDEMPOTENCY_KEY=key)
    assert r2.status_code == 201
    assert r2.json() == r1.json()
    assert r2.headers.get("Idempotent-Replay") == "true"

    # Charged and reserved once
    assert OrderModel.objects.count() == 1
    assert ProductModel.objects.get(id=product.id).stock == 3
    assert str(IdempotencyKey.objects.get(key=key).order_id) == r1.json()["id"]


@pytest.mark.django_db
def test_idempotent_conflict_on_different_payload_with_same_key(client, product):
    key = "idem-conflict-1"

    r1 = client.post(
        CREATE_URL, data=order_payload(product.id, 2), content_type="application/json", HTTP_IDEMPOTENCY_KEY=key
    )
    assert r1.status_code == 201

    r2 = client.post(
        CREATE_URL, data=order_payload(product.id, 3), content_type="application/json", HTTP_IDEMPOTENCY_KEY=key
    )
    assert r2.status_code == 409
    assert r2.json()["detail"] == "IDEMPOTENCY_CONFLICT"


@pytest.mark.django_db
def test_idempotent_in_flight_key_is_reported(client, product):
    data = order_payload(product.id)
    from apps.orders.idempotency import IN_FLIGHT, request_hash

    IdempotencyKey.objects.create(key="idem-busy", request_hash=request_hash(data), response_status=IN_FLIGHT)
    r = client.post(CREATE_URL, data=data, content_type="application/json", HTTP_IDEMPOTENCY_KEY="idem-busy")
    assert r.status_code == 409
    assert r.json()["detail"] == "IDEMPOTENCY_IN_PROGRESS"


@pytest.mark.django_db
def test_idempotent_replay_preserves_402_status(client, product, monkeypatch):
    calls = []

    async def decline(self, order_id, amount):
        calls.append(order_id)
        return False

    monkeypatch.setattr(adapters.PaymentGatewayStub, "process_payment", decline)

    key = "idem-402"
    data = order_payload(product.id)

    r1 = client.post(CREATE_URL, data=data, content_type="application/json", HTTP_IDEMPOTENCY_KEY=key)
    assert r1.status_code == 402

    r2 = client.post(CREATE_URL, data=data, content_type="application/json", HTTP_IDEMPOTENCY_KEY=key)
    assert r2.status_code == 402
    assert r2.json() == r1.json()
    assert r2.headers.get("Idempotent-Replay") == "true"
    assert len(calls) == 1
    assert str(IdempotencyKey.objects.get(key=key).order_id) == r1.json()["id"]


@pytest.mark.django_db
def test_requests_without_key_are_not_deduplicated(client, product):
    data = order_payload(product.id, 1)
    assert client.post(CREATE_URL, data=data, content_type="application/json").status_code == 201
    assert client.post(CREATE_URL, data=data, content_type="application/json").status_code == 201
    assert OrderModel.objects.count() == 2
    assert not IdempotencyKey.objects.exists()
