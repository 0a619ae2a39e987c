"""Seed the demo users and products through the store.

Idempotent for users (matched by email); products are always added, so run it
once on a fresh database.
"""

from decimal import Decimal

from asgiref.sync import async_to_sync
from django.core.management.base import BaseCommand

from apps.orders.domain import UserRole
from apps.orders.repository import DjangoStore

USERS = [
    ("admin@example.com", "Admin User", UserRole.ADMIN),
    ("customer@example.com", "Test Customer", UserRole.CUSTOMER),
]

PRODUCTS = [
    ("Product 1", "This is the first product", Decimal("19.99"), 100),
    ("Product 2", "This is the second product", Decimal("29.99"), 50),
    ("Product 3", "This is the third product", Decimal("39.99"), 25),
]


class Command(BaseCommand):
    help = "Create the demo users and products."

    def handle(self, *args, **options):
        async_to_sync(self._seed)()

    async def _seed(self):
        store = DjangoStore()
        for email, name, role in USERS:
            user = await store.find_user_by_email(email)
            if user is None:
                user = await store.create_user(email=email, name=name, role=role)
            self.stdout.write(f"user {user.email} {user.id}")
        for name, description, price, stock in PRODUCTS:
            product = await store.create_product(name=name, price=price, stock=stock, description=description)
            self.stdout.write(f"product {product.name} {product.id} stock={product.stock}")
