from datetime import datetime, timedelta, timezone

import pytest

from apps.checkout.adapters import GatewayStub, InMemoryCartStore, InMemoryOrderStore, InMemoryStockLedger, ShippingStub
from apps.checkout.cart import CartService
from apps.checkout.config import CheckoutConfig
from apps.checkout.domain import Variant
from apps.checkout.fulfillment import TextReceiptRenderer
from apps.checkout.service import CheckoutService


@pytest.fixture(autouse=True)
def use_stubs_for_tests(settings):
    settings.USE_HTTP_ADAPTERS = False
    settings.FULFILLMENT_INLINE = True
    settings.ORDER_LOCK_BACKEND = "process"
    settings.PAYMENT_WEBHOOK_TOKEN = ""
    settings.EMAIL_BACKEND = "django.core.mail.backends.locmem.EmailBackend"

    from django.core.cache import cache

    from apps.checkout.http_adapters import _payments_cb, _shipping_cb
    from apps.checkout.providers import reset_checkout_service

    _shipping_cb.reset()
    _payments_cb.reset()
    reset_checkout_service()
    cache.clear()  # throttle counters
    yield
    reset_checkout_service()


class FakeClock:
    """Settable clock; call it to read the current time."""

    def __init__(self, start=None):
        self.now = start or datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class RecordingNotifier:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    def order_completed(self, order, receipt):
        if self.fail:
            raise RuntimeError("smtp down")
        self.sent.append((order.id, receipt))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return CheckoutConfig()


@pytest.fixture
def ledger(clock, config):
    ledger = InMemoryStockLedger(ttl=config.reservation_ttl, clock=clock)
    ledger.add_variant(
        Variant(sku="TEE-M-BLK", product_id="tee", size="M", color="black", name="Basic tee", price_cents=10000, on_hand=5)
    )
    ledger.add_variant(
        Variant(sku="CAP-U-RED", product_id="cap", size=None, color="red", name="Cap", price_cents=5000, on_hand=1)
    )
    return ledger


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_service(ledger, clock, config, notifier):
    """Build a CheckoutService over in-memory adapters; keyword args override collaborators."""

    def build(**overrides):
        parts = dict(
            ledger=ledger,
            carts=CartService(InMemoryCartStore()),
            orders=InMemoryOrderStore(),
            shipping=ShippingStub(),
            gateway=GatewayStub(),
            config=config,
            receipts=TextReceiptRenderer("Test Store"),
            notifier=notifier,
            clock=clock,
            sleep=lambda _s: None,
        )
        parts.update(overrides)
        return CheckoutService(**parts)

    return build


@pytest.fixture
def catalog(db):
    """Seed the ORM stock ledger used by the API."""
    from apps.checkout.repository import LedgerRepository

    ledger = LedgerRepository()
    ledger.upsert(
        Variant(sku="TEE-M-BLK", product_id="tee", size="M", color="black", name="Basic tee", price_cents=10000, on_hand=5)
    )
    ledger.upsert(Variant(sku="CAP-U-RED", product_id="cap", color="red", name="Cap", price_cents=5000, on_hand=1))
    return ledger
