import json
from io import StringIO

import pytest
from django.core.management import CommandError, call_command

from apps.checkout.http_adapters import _payments_cb
from apps.checkout.models import VariantModel


@pytest.mark.django_db
def test_load_variants(tmp_path):
    path = tmp_path / "variants.json"
    rows = [
        {"sku": "TEE-M-BLK", "product_id": "tee", "size": "M", "color": "black", "price_cents": 10000, "on_hand": 5},
        {"sku": "CAP-U-RED", "product_id": "cap", "color": "red", "price_cents": 5000, "on_hand": 1},
    ]
    path.write_text(json.dumps(rows))

    call_command("load_variants", str(path))
    rows[0]["on_hand"] = 7
    path.write_text(json.dumps(rows))
    call_command("load_variants", str(path))

    assert VariantModel.objects.count() == 2
    assert VariantModel.objects.get(sku="TEE-M-BLK").on_hand == 7


@pytest.mark.django_db
def test_load_variants_rejects_bad_rows(tmp_path):
    path = tmp_path / "variants.json"
    path.write_text(json.dumps([{"sku": "X", "product_id": "x", "price_cents": 100, "on_hand": -1}]))
    with pytest.raises(CommandError):
        call_command("load_variants", str(path))
    with pytest.raises(CommandError):
        call_command("load_variants", str(tmp_path / "missing.json"))


@pytest.mark.django_db
def test_maintenance_reports_counts():
    buf = StringIO()
    call_command("checkout_maintenance", stdout=buf)
    out = buf.getvalue()
    assert "expired 0 checkout(s)" in out
    assert "re-dispatched fulfillment for 0 order(s)" in out


@pytest.mark.django_db
def test_health_reports_components(client):
    r = client.get("/api/monitoring/health/")
    assert r.status_code == 200
    body = r.json()
    assert body["ok"] is True
    assert body["components"]["payments"]["circuit"] == "CLOSED"
    assert body["reconciliation"]["open_conflicts"] == 0


@pytest.mark.django_db
def test_health_stays_up_with_open_circuit(client):
    for _ in range(_payments_cb.fail_threshold):
        _payments_cb.on_failure()
    r = client.get("/api/monitoring/health/")
    assert r.status_code == 200
    assert r.json()["components"]["payments"]["circuit"] == "OPEN"


@pytest.mark.django_db
def test_maintenance_resumes_fulfillment_after_mail_failure(client, catalog, mailoutbox, monkeypatch):
    from apps.checkout.fulfillment import EmailNotifier
    from apps.checkout.providers import get_checkout_service

    smtp = {"down": True}
    send = EmailNotifier.order_completed

    def flaky_send(self, order, receipt):
        if smtp["down"]:
            raise ConnectionRefusedError("smtp down")
        return send(self, order, receipt)

    monkeypatch.setattr(EmailNotifier, "order_completed", flaky_send)
    sid = {"HTTP_X_SESSION_ID": "sess-1"}
    item = {"product_id": "tee", "size": "M", "color": "black", "quantity": 1}
    client.post("/api/cart/items/", data=item, content_type="application/json", **sid)
    destination = {"zip_code": "01310100", "city": "Sao Paulo", "state": "sp"}
    oid = client.post("/api/checkout/", data={"destination": destination}, content_type="application/json", **sid).json()["id"]
    payment = {"method": "PIX", "installments": 1, "payer": {"name": "Ana", "email": "ana@example.com"}}
    ref = client.post(f"/api/checkout/{oid}/payment/", data=payment, content_type="application/json", **sid).json()[
        "transaction_ref"
    ]
    client.post("/api/payments/notifications/", data={"transaction_ref": ref, "status": "PAID"}, content_type="application/json")

    order = client.get(f"/api/orders/{oid}/", **sid).json()
    assert order["status"] == "FULFILLING"
    assert order["reason"] == "fulfillment failed: smtp down"
    assert mailoutbox == []

    smtp["down"] = False
    buf = StringIO()
    call_command("checkout_maintenance", stdout=buf)

    assert "re-dispatched fulfillment for 1 order(s)" in buf.getvalue()
    assert get_checkout_service().orders.get(oid).status.value == "COMPLETED"
    assert len(mailoutbox) == 1
    assert mailoutbox[0].to == ["ana@example.com"]
