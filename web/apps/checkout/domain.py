"""Domain models, errors and ports for checkout.

This module contains the dataclasses used as DTOs across the checkout
core (variants, carts, reservations, orders, payment attempts), the
error taxonomy raised by the domain, and the protocol definitions (ports)
for the collaborators the orchestrator depends on: stock ledger, cart
storage, order storage, shipping quotes, payment gateway and the
fulfillment side (receipt rendering and notification).

Money is always expressed in integer cents.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, ContextManager, List, Optional, Protocol, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---- Enums ----
class OrderStatus(str, Enum):
    """Lifecycle of an order, from checkout start to a terminal state."""

    INITIATED = "INITIATED"
    QUOTED = "QUOTED"
    RESERVED = "RESERVED"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    PAID = "PAID"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    EXPIRED = "EXPIRED"
    FULFILLING = "FULFILLING"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def pre_payment(self) -> bool:
        return self in PRE_PAYMENT_STATUSES


TERMINAL_STATUSES = frozenset(
    {OrderStatus.COMPLETED, OrderStatus.CANCELED, OrderStatus.PAYMENT_FAILED, OrderStatus.EXPIRED}
)
PRE_PAYMENT_STATUSES = frozenset(
    {OrderStatus.INITIATED, OrderStatus.QUOTED, OrderStatus.RESERVED, OrderStatus.PAYMENT_PENDING}
)

# Allowed transitions. PAYMENT_PENDING -> PAYMENT_PENDING is the automatic
# charge retry after a decline; FULFILLING -> FULFILLING records a failed
# fulfillment run that will be retried.
TRANSITIONS = {
    OrderStatus.INITIATED: {OrderStatus.QUOTED, OrderStatus.CANCELED, OrderStatus.EXPIRED},
    OrderStatus.QUOTED: {OrderStatus.RESERVED, OrderStatus.CANCELED, OrderStatus.EXPIRED},
    OrderStatus.RESERVED: {
        OrderStatus.PAYMENT_PENDING,
        OrderStatus.PAYMENT_FAILED,
        OrderStatus.CANCELED,
        OrderStatus.EXPIRED,
    },
    OrderStatus.PAYMENT_PENDING: {
        OrderStatus.PAYMENT_PENDING,
        OrderStatus.PAID,
        OrderStatus.PAYMENT_FAILED,
        OrderStatus.EXPIRED,
        OrderStatus.CANCELED,
    },
    OrderStatus.PAID: {OrderStatus.FULFILLING},
    OrderStatus.FULFILLING: {OrderStatus.FULFILLING, OrderStatus.COMPLETED},
}


class PaymentMethod(str, Enum):
    """Payment methods offered by the gateway."""

    PIX = "PIX"
    CREDIT_CARD = "CREDIT_CARD"
    DEBIT_CARD = "DEBIT_CARD"
    BOLETO = "BOLETO"

    @property
    def allows_installments(self) -> bool:
        return self is PaymentMethod.CREDIT_CARD


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"
    SUPERSEDED = "SUPERSEDED"


class ReservationStatus(str, Enum):
    ACTIVE = "ACTIVE"
    RELEASED = "RELEASED"
    COMMITTED = "COMMITTED"
    EXPIRED = "EXPIRED"


class GatewayOutcome(str, Enum):
    """Normalized outcome of a gateway notification or poll."""

    PAID = "PAID"
    FAILED = "FAILED"
    PENDING = "PENDING"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_gateway(cls, raw: str) -> "GatewayOutcome":
        """Map a raw gateway status string to an outcome.

        Gateways report several spellings for the same outcome (card
        "CONFIRMED", PIX "RECEIVED", boleto "OVERDUE", ...).
        """
        value = (raw or "").strip().upper()
        if value in {"PAID", "CONFIRMED", "RECEIVED", "RECEIVED_IN_CASH"}:
            return cls.PAID
        if value in {"FAILED", "DECLINED", "REFUSED", "OVERDUE", "CANCELED", "CANCELLED"}:
            return cls.FAILED
        if value in {"PENDING", "AWAITING_RISK_ANALYSIS", "AUTHORIZED"}:
            return cls.PENDING
        return cls.UNKNOWN


# ---- Errors ----
class CheckoutError(ValueError):
    """Base class for domain errors.

    ``str(err)`` is the short error code (for example
    ``"INSUFFICIENT_STOCK"``) so callers can branch on it the same way
    they would on a plain ``ValueError("INSUFFICIENT_STOCK")``. Extra
    context is available through ``details``.
    """

    code = "CHECKOUT_ERROR"

    def __init__(self, code: Optional[str] = None, **details):
        self.code = code or self.code
        self.details = details
        super().__init__(self.code)


class EmptyCart(CheckoutError):
    code = "EMPTY_CART"


class InvalidQuantity(CheckoutError):
    code = "INVALID_QUANTITY"


class VariantNotFound(CheckoutError):
    code = "VARIANT_NOT_FOUND"


class OrderNotFound(CheckoutError):
    code = "NOT_FOUND"


class CartInvalid(CheckoutError):
    """Raised when cart lines no longer match the catalog.

    Attributes:
        lines: list of ``(LineKey, reason)`` tuples, reason being
            ``"NOT_FOUND"`` or ``"OUT_OF_STOCK"``.
    """

    code = "CART_INVALID"

    def __init__(self, lines):
        super().__init__(lines=list(lines))
        self.lines = list(lines)


class InsufficientStock(CheckoutError):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, sku: str, requested: int, available: int):
        super().__init__(sku=sku, requested=requested, available=available)
        self.sku = sku
        self.requested = requested
        self.available = available


class ShippingUnavailable(CheckoutError):
    code = "SHIPPING_UNAVAILABLE"


class DestinationUnreachable(ShippingUnavailable):
    """The carrier refuses the destination; asking again will not help."""

    code = "DESTINATION_UNREACHABLE"


class GatewayError(CheckoutError):
    code = "GATEWAY_ERROR"


class ReservationExpired(CheckoutError):
    code = "RESERVATION_EXPIRED"


class ReconciliationConflict(CheckoutError):
    code = "RECONCILIATION_CONFLICT"


class PaymentMethodDisabled(CheckoutError):
    code = "PAYMENT_METHOD_DISABLED"


class CancellationRejected(CheckoutError):
    code = "CANCEL_NOT_ALLOWED"


class InvalidTransition(CheckoutError):
    code = "INVALID_TRANSITION"


class OrderBusy(CheckoutError):
    code = "ORDER_BUSY"


# ---- Entities / DTOs ----
LineKey = Tuple[str, Optional[str], Optional[str]]


@dataclass
class Variant:
    """A purchasable configuration of a product with its own stock.

    Attributes:
        sku: Unique identifier of the variant.
        product_id: Identifier of the parent product.
        size: Optional size descriptor.
        color: Optional color descriptor.
        name: Display name.
        price_cents: Base unit price.
        promo_price_cents: Optional promotional unit price, never above
            ``price_cents``.
        on_hand: Physical quantity not yet sold.
        weight_grams: Shipping weight of one unit.
    """

    sku: str
    product_id: str
    price_cents: int
    on_hand: int
    size: Optional[str] = None
    color: Optional[str] = None
    name: str = ""
    promo_price_cents: Optional[int] = None
    weight_grams: int = 300

    def __post_init__(self):
        if self.on_hand < 0:
            raise ValueError("on_hand must be >= 0")
        if self.promo_price_cents is not None and self.promo_price_cents > self.price_cents:
            raise ValueError("promo_price_cents must be <= price_cents")

    @property
    def key(self) -> LineKey:
        return (self.product_id, self.size, self.color)

    @property
    def unit_price_cents(self) -> int:
        if self.promo_price_cents is not None:
            return self.promo_price_cents
        return self.price_cents


@dataclass
class CartLine:
    product_id: str
    quantity: int
    size: Optional[str] = None
    color: Optional[str] = None
    price_snapshot_cents: Optional[int] = None

    @property
    def key(self) -> LineKey:
        return (self.product_id, self.size, self.color)


@dataclass
class Cart:
    owner_id: str
    lines: List[CartLine] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.lines


@dataclass
class Reservation:
    id: str
    lines: List[Tuple[str, int]]
    expires_at: datetime
    status: ReservationStatus = ReservationStatus.ACTIVE


@dataclass(frozen=True)
class Destination:
    zip_code: str
    city: str = ""
    state: str = ""
    country: str = "BR"


@dataclass(frozen=True)
class Parcel:
    weight_grams: int
    items: int


@dataclass(frozen=True)
class ShippingOption:
    method: str
    cost_cents: int
    eta_days: int


@dataclass(frozen=True)
class PayerInfo:
    name: str
    email: str
    document: str = ""


@dataclass(frozen=True)
class OrderLine:
    """A line of the frozen cart snapshot taken at checkout time."""

    sku: str
    product_id: str
    quantity: int
    unit_price_cents: int
    size: Optional[str] = None
    color: Optional[str] = None
    name: str = ""
    weight_grams: int = 0

    @property
    def total_cents(self) -> int:
        return self.unit_price_cents * self.quantity


@dataclass(frozen=True)
class StatusEntry:
    status: OrderStatus
    reason: str
    at: datetime


@dataclass
class PaymentAttempt:
    transaction_ref: str
    method: PaymentMethod
    amount_cents: int
    installments: int
    status: PaymentStatus = PaymentStatus.PENDING
    created_at: Optional[datetime] = None


@dataclass
class Order:
    """Container for order data.

    The line snapshot is immutable once created; only ``status`` and the
    payment/reservation bookkeeping change, and every status change is
    appended to ``history``.
    """

    id: str
    owner_id: str
    lines: List[OrderLine]
    destination: Destination
    shipping: ShippingOption
    status: OrderStatus = OrderStatus.INITIATED
    currency: str = "BRL"
    payment_method: Optional[PaymentMethod] = None
    payer: Optional[PayerInfo] = None
    installments: int = 1
    reservation_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    reconciliation_required: bool = False
    history: List[StatusEntry] = field(default_factory=list)
    attempts: List[PaymentAttempt] = field(default_factory=list)
    created_at: Optional[datetime] = None

    @property
    def subtotal_cents(self) -> int:
        return sum(line.total_cents for line in self.lines)

    @property
    def total_cents(self) -> int:
        return self.subtotal_cents + self.shipping.cost_cents

    @property
    def active_attempt(self) -> Optional[PaymentAttempt]:
        for attempt in reversed(self.attempts):
            if attempt.status is PaymentStatus.PENDING:
                return attempt
        return None

    @property
    def last_reason(self) -> str:
        return self.history[-1].reason if self.history else ""


@dataclass(frozen=True)
class InstallmentPlan:
    """Result of applying installment rules to a total."""

    count: int
    requested: int
    amounts_cents: Tuple[int, ...]

    @property
    def adjusted(self) -> bool:
        return self.count != self.requested

    @property
    def installment_cents(self) -> int:
        return self.amounts_cents[0]


@dataclass(frozen=True)
class PaymentResult:
    order_id: str
    status: OrderStatus
    transaction_ref: str
    total_cents: int
    plan: InstallmentPlan


@dataclass(frozen=True)
class Ack:
    """Acknowledgement returned to the gateway for a notification."""

    order_id: Optional[str]
    applied: bool
    duplicate: bool = False
    conflict: bool = False
    status: Optional[OrderStatus] = None


# ---- Ports (DIP) ----
class StockLedgerPort(Protocol):
    """Authoritative price and stock view with reservation support."""

    def get_variant(self, product_id: str, size: Optional[str], color: Optional[str]) -> Variant:
        """Return the variant or raise ``VariantNotFound``."""
        raise NotImplementedError()

    def reserve(self, items: List[Tuple[str, int]]) -> Reservation:
        """Hold all quantities or none; raise ``InsufficientStock``."""
        raise NotImplementedError()

    def release(self, reservation_id: str) -> None:
        raise NotImplementedError()

    def commit(self, reservation_id: str) -> None:
        """Convert the hold to a sale; raise ``ReservationExpired``."""
        raise NotImplementedError()

    def sweep_expired(self) -> int:
        raise NotImplementedError()


class CartStorePort(Protocol):
    def load(self, owner_id: str) -> Cart:
        raise NotImplementedError()

    def save(self, cart: Cart) -> None:
        raise NotImplementedError()


class OrderStorePort(Protocol):
    """Durable record of orders, their history and payment attempts."""

    def create(self, order: Order) -> None:
        raise NotImplementedError()

    def get(self, order_id: str) -> Order:
        """Return the order or raise ``OrderNotFound``."""
        raise NotImplementedError()

    def save(self, order: Order) -> None:
        """Persist the mutable fields (not lines, not history)."""
        raise NotImplementedError()

    def append_status(self, order_id: str, status: OrderStatus, reason: str, at: datetime) -> None:
        raise NotImplementedError()

    def list_by_owner(self, owner_id: str) -> List[Order]:
        raise NotImplementedError()

    def list_open(self) -> List[Order]:
        raise NotImplementedError()

    def add_attempt(self, order_id: str, attempt: PaymentAttempt) -> None:
        raise NotImplementedError()

    def update_attempt(self, order_id: str, attempt: PaymentAttempt) -> None:
        raise NotImplementedError()

    def find_by_transaction(self, transaction_ref: str) -> Optional[str]:
        raise NotImplementedError()

    def mark_event_applied(self, order_id: str, transaction_ref: str, outcome: GatewayOutcome) -> bool:
        """Record the event; return False when it was already applied."""
        raise NotImplementedError()

    def record_conflict(self, order_id: str, transaction_ref: str, reason: str, at: datetime) -> None:
        raise NotImplementedError()


class ShippingPort(Protocol):
    def quote(self, origin: str, destination: Destination, parcel: Parcel) -> List[ShippingOption]:
        """Return candidate options or raise ``ShippingUnavailable``."""
        raise NotImplementedError()


class PaymentGatewayPort(Protocol):
    def create_charge(
        self,
        amount_cents: int,
        method: PaymentMethod,
        installments: int,
        payer: PayerInfo,
        reference: str,
    ) -> str:
        """Create a charge and return its transaction reference.

        Raises:
            GatewayError: on transport failures or a refused request.
        """
        raise NotImplementedError()

    def get_status(self, transaction_ref: str) -> str:
        raise NotImplementedError()


class ReceiptPort(Protocol):
    def render(self, order: Order) -> str:
        raise NotImplementedError()


class NotifierPort(Protocol):
    def order_completed(self, order: Order, receipt: str) -> None:
        raise NotImplementedError()


class LocksPort(Protocol):
    def hold(self, order_id: str) -> ContextManager[None]:
        """Exclusive section for one order id; raise ``OrderBusy`` on timeout."""
        raise NotImplementedError()


class DispatcherPort(Protocol):
    def submit(self, fn: Callable, *args): ...
