"""Receipt rendering, email notification and the background dispatcher."""
import pytest

from apps.checkout.domain import (
    Destination,
    Order,
    OrderLine,
    OrderStatus,
    PayerInfo,
    PaymentMethod,
    ShippingOption,
)
from apps.checkout.fulfillment import EmailNotifier, TextReceiptRenderer, ThreadDispatcher, format_cents


def make_order(email="ana@example.com"):
    return Order(
        id="6f1c1a0e-0000-4000-8000-000000000001",
        owner_id="user:1",
        lines=[
            OrderLine(sku="TEE-M-BLK", product_id="tee", quantity=2, unit_price_cents=10000, size="M", color="black", name="Basic tee")
        ],
        destination=Destination(zip_code="01310-100"),
        shipping=ShippingOption("ship-1", 1500, 5),
        status=OrderStatus.FULFILLING,
        payment_method=PaymentMethod.CREDIT_CARD,
        installments=4,
        payer=PayerInfo(name="Ana", email=email) if email is not None else None,
    )


def test_format_cents():
    assert format_cents(21500) == "R$ 215,00"
    assert format_cents(123456789) == "R$ 1.234.567,89"
    assert format_cents(-5) == "-R$ 0,05"
    assert format_cents(100, "USD") == "USD 1,00"


def test_receipt_lists_lines_and_totals():
    receipt = TextReceiptRenderer("Test Store").render(make_order())
    assert receipt.splitlines()[0] == "Test Store"
    assert "2 x Basic tee (M / black)  R$ 200,00" in receipt
    assert "Shipping (ship-1)  R$ 15,00" in receipt
    assert "Total  R$ 215,00" in receipt
    assert "Paid with CREDIT_CARD in 4x" in receipt


def test_email_notifier_sends_receipt(mailoutbox):
    order = make_order()
    EmailNotifier("orders@test.local", "Test Store").order_completed(order, "receipt body")

    assert len(mailoutbox) == 1
    message = mailoutbox[0]
    assert message.to == ["ana@example.com"]
    assert order.id in message.subject
    assert message.attachments[0][0] == f"receipt-{order.id}.txt"


def test_email_notifier_skips_orders_without_email(mailoutbox):
    EmailNotifier("orders@test.local").order_completed(make_order(email=""), "receipt")
    EmailNotifier("orders@test.local").order_completed(make_order(email=None), "receipt")
    assert mailoutbox == []


def test_thread_dispatcher_runs_and_propagates(monkeypatch):
    monkeypatch.setattr("apps.checkout.fulfillment.close_old_connections", lambda: None)
    dispatcher = ThreadDispatcher(max_workers=1)

    assert dispatcher.submit(lambda a, b: a + b, 2, 3).result(timeout=2) == 5

    def boom():
        raise RuntimeError("nope")

    with pytest.raises(RuntimeError):
        dispatcher.submit(boom).result(timeout=2)
