from django.db import DatabaseError, connection
from django.http import JsonResponse

from apps.checkout.http_adapters import _payments_cb, _shipping_cb
from apps.checkout.models import ReconciliationConflictModel


def health_view(_request):
    db_ok = False
    open_conflicts = None
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1;")
        db_ok = True
        open_conflicts = ReconciliationConflictModel.objects.filter(resolved=False).count()
    except DatabaseError:
        db_ok = False

    # an open circuit degrades checkout but the process itself is healthy
    ok = db_ok
    code = 200 if ok else 503
    return JsonResponse(
        {
            "ok": ok,
            "components": {
                "db": {"ok": db_ok},
                "shipping": {"circuit": _shipping_cb.state},
                "payments": {"circuit": _payments_cb.state},
            },
            "reconciliation": {"open_conflicts": open_conflicts},
        },
        status=code,
    )
