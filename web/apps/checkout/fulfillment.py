"""Fulfillment collaborators: receipt rendering, customer email, dispatch.

The orchestrator calls these once per PAID -> COMPLETED transition
(at-least-once across crashes), so both are safe to repeat for the same
order id: the receipt is a pure function of the order and the email
carries the order id in its subject so duplicates are recognizable.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable

from django.core.mail import EmailMessage
from django.db import close_old_connections

from .domain import NotifierPort, Order, ReceiptPort

logger = logging.getLogger(__name__)


def format_cents(cents: int, currency: str = "BRL") -> str:
    """Format ``cents`` the way Brazilian receipts show money (R$ 1.234,56)."""
    units, rest = divmod(abs(cents), 100)
    grouped = f"{units:,}".replace(",", ".")
    sign = "-" if cents < 0 else ""
    symbol = "R$" if currency == "BRL" else currency
    return f"{sign}{symbol} {grouped},{rest:02d}"


class TextReceiptRenderer(ReceiptPort):
    """Plain-text receipt built from the frozen order snapshot."""

    def __init__(self, store_name: str = "Storefront"):
        self.store_name = store_name

    def render(self, order: Order) -> str:
        cur = order.currency
        out = [self.store_name, f"Order {order.id}", ""]
        for line in order.lines:
            variant = " / ".join(v for v in (line.size, line.color) if v)
            label = f"{line.name or line.sku} ({variant})" if variant else (line.name or line.sku)
            out.append(f"{line.quantity} x {label}  {format_cents(line.total_cents, cur)}")
        out.append("")
        out.append(f"Subtotal  {format_cents(order.subtotal_cents, cur)}")
        out.append(f"Shipping ({order.shipping.method})  {format_cents(order.shipping.cost_cents, cur)}")
        out.append(f"Total  {format_cents(order.total_cents, cur)}")
        if order.payment_method is not None:
            out.append(f"Paid with {order.payment_method.value} in {order.installments}x")
        return "\n".join(out)


class EmailNotifier(NotifierPort):
    """Sends the receipt through Django's configured email backend."""

    def __init__(self, from_email: str, store_name: str = "Storefront"):
        self.from_email = from_email
        self.store_name = store_name

    def order_completed(self, order: Order, receipt: str) -> None:
        if order.payer is None or not order.payer.email:
            logger.info("no payer email, skipping notification", extra={"order_id": order.id})
            return
        message = EmailMessage(
            subject=f"{self.store_name}: order {order.id} confirmed",
            body=receipt,
            from_email=self.from_email,
            to=[order.payer.email],
        )
        message.attach(f"receipt-{order.id}.txt", receipt, "text/plain")
        message.send(fail_silently=False)
        logger.info("order confirmation sent", extra={"order_id": order.id})


class ThreadDispatcher:
    """Runs fulfillment on a small thread pool.

    Each task closes stale database connections when it finishes, since
    worker threads outlive the request that queued them.
    """

    def __init__(self, max_workers: int = 2):
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="fulfillment")

    def submit(self, fn: Callable, *args):
        return self._pool.submit(self._run, fn, *args)

    @staticmethod
    def _run(fn: Callable, *args):
        try:
            return fn(*args)
        except Exception:
            logger.exception("background task failed", extra={"task": getattr(fn, "__name__", repr(fn))})
            raise
        finally:
            close_old_connections()
