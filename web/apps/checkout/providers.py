"""Service provider helpers for wiring CheckoutService with ports.

``get_checkout_service`` returns the process-wide ``CheckoutService``.
It is built once from Django settings: ORM repositories for stock, carts
and orders; HTTP clients for shipping and payments when
``settings.USE_HTTP_ADAPTERS`` is truthy, in-process stubs otherwise;
in-process or row-level order locks per ``settings.ORDER_LOCK_BACKEND``;
and inline or threaded fulfillment per ``settings.FULFILLMENT_INLINE``.

The instance is shared because the order locks and the circuit breakers
only work when every request sees the same objects.
"""

import logging
import threading
from typing import Optional

from django.conf import settings

from .adapters import GatewayStub, ShippingStub
from .cart import CartService
from .config import CheckoutConfig
from .fulfillment import EmailNotifier, TextReceiptRenderer, ThreadDispatcher
from .http_adapters import HttpGatewayClient, HttpShippingClient
from .locks import KeyedLocks
from .repository import CartRepository, LedgerRepository, OrderRepository, RowLocks
from .service import CheckoutService, InlineDispatcher

logger = logging.getLogger(__name__)

_lock = threading.Lock()
_service: Optional[CheckoutService] = None


def build_checkout_service() -> CheckoutService:
    """Build a new CheckoutService from the current settings."""
    config = CheckoutConfig.from_settings(settings)

    if getattr(settings, "USE_HTTP_ADAPTERS", True):
        shipping = HttpShippingClient()
        gateway = HttpGatewayClient(currency=config.currency)
    else:
        shipping = ShippingStub()
        gateway = GatewayStub()

    if getattr(settings, "ORDER_LOCK_BACKEND", "process") == "database":
        locks = RowLocks(timeout=config.lock_timeout)
    else:
        locks = KeyedLocks(timeout=config.lock_timeout)

    if getattr(settings, "FULFILLMENT_INLINE", False):
        dispatcher = InlineDispatcher()
    else:
        dispatcher = ThreadDispatcher(max_workers=getattr(settings, "FULFILLMENT_WORKERS", 2))

    store_name = getattr(settings, "STORE_NAME", "Storefront")
    service = CheckoutService(
        ledger=LedgerRepository(ttl=config.reservation_ttl),
        carts=CartService(CartRepository()),
        orders=OrderRepository(),
        shipping=shipping,
        gateway=gateway,
        config=config,
        locks=locks,
        receipts=TextReceiptRenderer(store_name),
        notifier=EmailNotifier(settings.DEFAULT_FROM_EMAIL, store_name),
        dispatcher=dispatcher,
    )
    logger.info(
        "checkout service configured",
        extra={
            "shipping": type(shipping).__name__,
            "gateway": type(gateway).__name__,
            "locks": type(locks).__name__,
            "dispatcher": type(dispatcher).__name__,
        },
    )
    return service


def get_checkout_service() -> CheckoutService:
    """Return the shared CheckoutService, building it on first use."""
    global _service
    with _lock:
        if _service is None:
            _service = build_checkout_service()
        return _service


def reset_checkout_service() -> None:
    """Drop the shared instance so the next call rebuilds it from settings."""
    global _service
    with _lock:
        _service = None
