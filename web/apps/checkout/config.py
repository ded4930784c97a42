"""Checkout configuration.

``CheckoutConfig`` is a frozen snapshot of the store's payment, shipping
and retry settings. It is built once at process start (see
``providers.get_checkout_service``) and handed to the orchestrator, so the
domain never reads Django settings directly.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import FrozenSet

from .domain import PaymentMethod


DEFAULT_METHODS = frozenset({PaymentMethod.PIX, PaymentMethod.CREDIT_CARD, PaymentMethod.DEBIT_CARD})


@dataclass(frozen=True)
class CheckoutConfig:
    """Store-wide checkout settings.

    Attributes:
        currency: ISO currency of every amount.
        reservation_ttl: How long a stock hold (and so an unpaid order)
            stays valid.
        quote_ttl: How long a quoted checkout waits for a payment choice.
        max_installments: Upper bound for credit card installments.
        min_installment_cents: Smallest acceptable installment value.
        payment_methods: Methods enabled for the store.
        origin_zip: Zip code parcels ship from.
        default_shipping_method: Method picked when the caller names none
            and the quote offers it; otherwise the cheapest option wins.
        free_shipping_threshold_cents: Subtotal from which shipping is
            free; 0 disables the promotion.
        shipping_retry_max: Quote attempts before ``ShippingUnavailable``.
        retry_backoff_base: Base seconds for exponential backoff.
        retry_max_sleep: Cap for a single backoff sleep.
        gateway_retry_limit: Extra charge-creation attempts after a
            ``GatewayError``.
        payment_retry_limit: Automatic new charges after a declined
            payment.
        lock_timeout: Seconds to wait for an order's critical section.
    """

    currency: str = "BRL"
    reservation_ttl: timedelta = timedelta(minutes=15)
    quote_ttl: timedelta = timedelta(minutes=30)
    max_installments: int = 6
    min_installment_cents: int = 5000
    payment_methods: FrozenSet[PaymentMethod] = field(default_factory=lambda: DEFAULT_METHODS)
    origin_zip: str = "01001-000"
    default_shipping_method: str = "ship-1"
    free_shipping_threshold_cents: int = 29900
    shipping_retry_max: int = 3
    retry_backoff_base: float = 0.15
    retry_max_sleep: float = 0.5
    gateway_retry_limit: int = 1
    payment_retry_limit: int = 1
    lock_timeout: float = 10.0

    @classmethod
    def from_settings(cls, settings) -> "CheckoutConfig":
        """Build the config from a Django settings object.

        Missing attributes fall back to the dataclass defaults.
        """
        defaults = cls()
        raw_methods = getattr(settings, "CHECKOUT_PAYMENT_METHODS", None)
        if raw_methods is None:
            methods = defaults.payment_methods
        else:
            if isinstance(raw_methods, str):
                raw_methods = [m for m in raw_methods.split(",") if m.strip()]
            methods = frozenset(PaymentMethod(m.strip().upper()) for m in raw_methods)

        return cls(
            currency=getattr(settings, "CHECKOUT_CURRENCY", defaults.currency),
            reservation_ttl=timedelta(
                seconds=getattr(settings, "CHECKOUT_RESERVATION_TTL_SECS", defaults.reservation_ttl.total_seconds())
            ),
            quote_ttl=timedelta(seconds=getattr(settings, "CHECKOUT_QUOTE_TTL_SECS", defaults.quote_ttl.total_seconds())),
            max_installments=getattr(settings, "CHECKOUT_MAX_INSTALLMENTS", defaults.max_installments),
            min_installment_cents=getattr(settings, "CHECKOUT_MIN_INSTALLMENT_CENTS", defaults.min_installment_cents),
            payment_methods=methods,
            origin_zip=getattr(settings, "CHECKOUT_ORIGIN_ZIP", defaults.origin_zip),
            default_shipping_method=getattr(
                settings, "CHECKOUT_DEFAULT_SHIPPING_METHOD", defaults.default_shipping_method
            ),
            free_shipping_threshold_cents=getattr(
                settings, "CHECKOUT_FREE_SHIPPING_THRESHOLD_CENTS", defaults.free_shipping_threshold_cents
            ),
            shipping_retry_max=getattr(settings, "HTTP_RETRY_MAX", defaults.shipping_retry_max),
            retry_backoff_base=getattr(settings, "HTTP_RETRY_BACKOFF_BASE", defaults.retry_backoff_base),
            retry_max_sleep=getattr(settings, "HTTP_RETRY_MAX_SLEEP", defaults.retry_max_sleep),
            gateway_retry_limit=getattr(settings, "CHECKOUT_GATEWAY_RETRY_LIMIT", defaults.gateway_retry_limit),
            payment_retry_limit=getattr(settings, "CHECKOUT_PAYMENT_RETRY_LIMIT", defaults.payment_retry_limit),
            lock_timeout=getattr(settings, "ORDER_LOCK_TIMEOUT_SECS", defaults.lock_timeout),
        )
