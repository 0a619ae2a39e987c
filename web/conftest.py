import pytest


@pytest.fixture(autouse=True)
def use_stubs_for_tests(settings):
    settings.USE_HTTP_ADAPTERS = False


@pytest.fixture(autouse=True)
def fresh_observability(monkeypatch):
    """Give every test its own context snapshot, closed circuits and throttle counters."""
    from django.core.cache import cache

    from apps.orders import providers
    from apps.orders.context import OrchestratorContext
    from apps.orders.http_adapters import payments_breaker, shipping_breaker

    monkeypatch.setattr(providers, "ORDER_CONTEXT", OrchestratorContext())
    payments_breaker.reset()
    shipping_breaker.reset()
    cache.clear()
