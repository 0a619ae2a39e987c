import os

# The simulator binds its engine at import time.
os.environ.setdefault("PAYMENTS_DATABASE_URL", "sqlite+pysqlite:///:memory:")

import pytest
from fastapi.testclient import TestClient


@pytest.fixture
def api():
    from payments.main import app

    return TestClient(app)


@pytest.fixture
def always_approve(monkeypatch):
    monkeypatch.setenv("PAYMENTS_APPROVAL_RATE", "1")


@pytest.fixture
def always_decline(monkeypatch):
    monkeypatch.setenv("PAYMENTS_APPROVAL_RATE", "0")
