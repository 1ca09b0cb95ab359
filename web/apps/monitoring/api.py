from django.http import JsonResponse
from django.db import DatabaseError, connection

from apps.checkout.resilience import BREAKERS


def health_view(_request):
    """DB check plus the state of every outbound circuit breaker.

    Answers 503 only when the database is down; an open circuit degrades
    checkout but the process itself is healthy.
    """
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1;")
        db_ok = True
    except DatabaseError:
        db_ok = False

    circuits = {name: {"state": cb.state} for name, cb in BREAKERS.items()}
    degraded = any(c["state"] != "CLOSED" for c in circuits.values())
    return JsonResponse(
        {"ok": db_ok, "degraded": degraded, "components": {"db": {"ok": db_ok}, "circuits": circuits}},
        status=200 if db_ok else 503,
    )
