from decimal import Decimal
from io import StringIO

import pytest
from django.core.management import call_command

from apps.orders.models import ProductModel, UserModel


@pytest.mark.django_db
def test_seed_catalog_creates_users_and_products():
    out = StringIO()
    call_command("seed_catalog", stdout=out)

    assert set(UserModel.objects.values_list("email", "role")) == {
        ("admin@example.com", "admin"),
        ("customer@example.com", "customer"),
    }
    assert sorted(ProductModel.objects.values_list("price", "stock")) == [
        (Decimal("19.99"), 100),
        (Decimal("29.99"), 50),
        (Decimal("39.99"), 25),
    ]
    assert "admin@example.com" in out.getvalue()


@pytest.mark.django_db
def test_seed_catalog_does_not_duplicate_users():
    call_command("seed_catalog", stdout=StringIO())
    call_command("seed_catalog", stdout=StringIO())
    assert UserModel.objects.count() == 2
