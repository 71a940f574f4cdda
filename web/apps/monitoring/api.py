from django.conf import settings
from django.db import DatabaseError, connection
from django.http import JsonResponse

from apps.orders.http_adapters import payments_cb


def health_view(_request):
    """Readiness probe: database reachable and processor circuit not open.

    The circuit is only reported (and only counts) when the HTTP processor
    backend is in use.
    """
    db_ok = False
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1;")
        db_ok = True
    except DatabaseError:
        db_ok = False

    components = {"db": {"ok": db_ok}}
    ok = db_ok
    if getattr(settings, "PAYMENT_BACKEND", "stub") == "http":
        circuit = payments_cb.snapshot()
        circuit["ok"] = circuit["state"] != "OPEN"
        components["payments"] = circuit
        ok = ok and circuit["ok"]

    code = 200 if ok else 503
    return JsonResponse({"ok": ok, "components": components}, status=code)


def live_view(_request):
    return JsonResponse({"ok": True})
