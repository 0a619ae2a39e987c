from django.db import DatabaseError, connection
from django.http import JsonResponse

from apps.orders.http_adapters import BreakerState, payments_breaker, shipping_breaker


def health_view(_request):
    """Database reachability plus the state of the downstream circuits.

    Only the database decides the status code; an open circuit degrades
    order creation but the gateway itself is still up.
    """
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1;")
        db_ok = True
    except DatabaseError:
        db_ok = False

    circuits = {
        breaker.name: {"state": breaker.state.value, "ok": breaker.state is not BreakerState.OPEN}
        for breaker in (payments_breaker, shipping_breaker)
    }
    return JsonResponse(
        {"ok": db_ok, "components": {"db": {"ok": db_ok}, **circuits}},
        status=200 if db_ok else 503,
    )
