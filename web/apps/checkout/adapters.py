"""In-process adapters for the checkout domain ports.

These implementations keep everything in memory and make no network
calls. They are intended for unit tests and local development where
deterministic behavior is useful and the database or the external
shipping/payment services are not required.

``InMemoryStockLedger`` is a complete ledger (atomic multi-item
reservations, lazy TTL expiry, idempotent release) guarded by a single
mutex. ``InMemoryOrderStore`` and ``InMemoryCartStore`` hand out copies so
callers cannot mutate stored state behind the store's back.
"""

import copy
import threading
import uuid
from collections import Counter
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set, Tuple

from .domain import (
    Cart,
    CartStorePort,
    Destination,
    DestinationUnreachable,
    GatewayError,
    GatewayOutcome,
    InsufficientStock,
    LineKey,
    Order,
    OrderNotFound,
    OrderStatus,
    OrderStorePort,
    Parcel,
    PayerInfo,
    PaymentAttempt,
    PaymentGatewayPort,
    PaymentMethod,
    Reservation,
    ReservationExpired,
    ReservationStatus,
    ShippingOption,
    ShippingPort,
    StatusEntry,
    StockLedgerPort,
    Variant,
    VariantNotFound,
    utcnow,
)


class InMemoryStockLedger(StockLedgerPort):
    """Stock ledger kept in process memory.

    Free stock of a variant is ``on_hand`` minus the quantities held by
    active, unexpired reservations. ``commit`` moves a hold into a
    permanent ``on_hand`` decrement.
    """

    def __init__(self, ttl: timedelta = timedelta(minutes=15), clock: Callable[[], datetime] = utcnow):
        self.ttl = ttl
        self.clock = clock
        self._lock = threading.Lock()
        self._variants: Dict[str, Variant] = {}
        self._by_key: Dict[LineKey, str] = {}
        self._reservations: Dict[str, Reservation] = {}

    def add_variant(self, variant: Variant) -> None:
        with self._lock:
            self._variants[variant.sku] = copy.copy(variant)
            self._by_key[variant.key] = variant.sku

    def remove_variant(self, sku: str) -> None:
        with self._lock:
            variant = self._variants.pop(sku, None)
            if variant is not None:
                self._by_key.pop(variant.key, None)

    def get_variant(self, product_id: str, size: Optional[str], color: Optional[str]) -> Variant:
        with self._lock:
            sku = self._by_key.get((product_id, size, color))
            if sku is None:
                raise VariantNotFound(product_id=product_id, size=size, color=color)
            return copy.copy(self._variants[sku])

    def available(self, sku: str) -> int:
        """Free quantity of ``sku`` right now."""
        with self._lock:
            variant = self._variants.get(sku)
            if variant is None:
                return 0
            return variant.on_hand - self._held(self.clock()).get(sku, 0)

    def on_hand(self, sku: str) -> int:
        with self._lock:
            return self._variants[sku].on_hand

    def reservation(self, reservation_id: str) -> Optional[Reservation]:
        with self._lock:
            r = self._reservations.get(reservation_id)
            return copy.deepcopy(r) if r else None

    def _held(self, now: datetime) -> Counter:
        held: Counter = Counter()
        for r in self._reservations.values():
            if r.status is not ReservationStatus.ACTIVE:
                continue
            if now >= r.expires_at:
                r.status = ReservationStatus.EXPIRED
                continue
            for sku, qty in r.lines:
                held[sku] += qty
        return held

    def reserve(self, items: List[Tuple[str, int]]) -> Reservation:
        wanted: Counter = Counter()
        for sku, qty in items:
            wanted[sku] += qty

        with self._lock:
            now = self.clock()
            held = self._held(now)
            for sku, qty in wanted.items():
                variant = self._variants.get(sku)
                if variant is None:
                    raise InsufficientStock(sku, qty, 0)
                free = variant.on_hand - held.get(sku, 0)
                if qty > free:
                    raise InsufficientStock(sku, qty, max(free, 0))

            reservation = Reservation(
                id=str(uuid.uuid4()),
                lines=list(wanted.items()),
                expires_at=now + self.ttl,
            )
            self._reservations[reservation.id] = reservation
            return copy.deepcopy(reservation)

    def release(self, reservation_id: str) -> None:
        with self._lock:
            r = self._reservations.get(reservation_id)
            if r is None or r.status is not ReservationStatus.ACTIVE:
                return
            r.status = ReservationStatus.RELEASED

    def commit(self, reservation_id: str) -> None:
        with self._lock:
            r = self._reservations.get(reservation_id)
            if r is None:
                raise ReservationExpired(reservation_id=reservation_id)
            if r.status is ReservationStatus.COMMITTED:
                return
            if r.status is ReservationStatus.ACTIVE and self.clock() >= r.expires_at:
                r.status = ReservationStatus.EXPIRED
            if r.status is not ReservationStatus.ACTIVE:
                raise ReservationExpired(reservation_id=reservation_id, status=r.status.value)

            for sku, qty in r.lines:
                self._variants[sku].on_hand -= qty
            r.status = ReservationStatus.COMMITTED

    def sweep_expired(self) -> int:
        with self._lock:
            before = sum(1 for r in self._reservations.values() if r.status is ReservationStatus.EXPIRED)
            self._held(self.clock())
            after = sum(1 for r in self._reservations.values() if r.status is ReservationStatus.EXPIRED)
            return after - before


class InMemoryCartStore(CartStorePort):
    def __init__(self):
        self._carts: Dict[str, Cart] = {}
        self._lock = threading.Lock()

    def load(self, owner_id: str) -> Cart:
        with self._lock:
            cart = self._carts.get(owner_id)
            return copy.deepcopy(cart) if cart else Cart(owner_id=owner_id)

    def save(self, cart: Cart) -> None:
        with self._lock:
            self._carts[cart.owner_id] = copy.deepcopy(cart)


class InMemoryOrderStore(OrderStorePort):
    """Order store backed by dicts; reads return deep copies."""

    def __init__(self):
        self._lock = threading.Lock()
        self._orders: Dict[str, Order] = {}
        self._by_tx: Dict[str, str] = {}
        self._applied: Set[Tuple[str, str, str]] = set()
        self.conflicts: List[Tuple[str, str, str, datetime]] = []

    def create(self, order: Order) -> None:
        with self._lock:
            self._orders[order.id] = copy.deepcopy(order)

    def _get(self, order_id: str) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise OrderNotFound(order_id=order_id)
        return order

    def get(self, order_id: str) -> Order:
        with self._lock:
            return copy.deepcopy(self._get(order_id))

    def save(self, order: Order) -> None:
        with self._lock:
            stored = self._get(order.id)
            stored.status = order.status
            stored.payment_method = order.payment_method
            stored.installments = order.installments
            stored.payer = order.payer
            stored.reservation_id = order.reservation_id
            stored.expires_at = order.expires_at
            stored.reconciliation_required = order.reconciliation_required

    def append_status(self, order_id: str, status: OrderStatus, reason: str, at: datetime) -> None:
        with self._lock:
            self._get(order_id).history.append(StatusEntry(status=status, reason=reason, at=at))

    def list_by_owner(self, owner_id: str) -> List[Order]:
        with self._lock:
            orders = [o for o in self._orders.values() if o.owner_id == owner_id]
            return [copy.deepcopy(o) for o in sorted(orders, key=lambda o: o.created_at or utcnow(), reverse=True)]

    def list_open(self) -> List[Order]:
        with self._lock:
            return [copy.deepcopy(o) for o in self._orders.values() if not o.status.terminal]

    def add_attempt(self, order_id: str, attempt: PaymentAttempt) -> None:
        with self._lock:
            self._get(order_id).attempts.append(copy.copy(attempt))
            self._by_tx[attempt.transaction_ref] = order_id

    def update_attempt(self, order_id: str, attempt: PaymentAttempt) -> None:
        with self._lock:
            for stored in self._get(order_id).attempts:
                if stored.transaction_ref == attempt.transaction_ref:
                    stored.status = attempt.status

    def find_by_transaction(self, transaction_ref: str) -> Optional[str]:
        with self._lock:
            return self._by_tx.get(transaction_ref)

    def mark_event_applied(self, order_id: str, transaction_ref: str, outcome: GatewayOutcome) -> bool:
        key = (order_id, transaction_ref, outcome.value)
        with self._lock:
            if key in self._applied:
                return False
            self._applied.add(key)
            return True

    def record_conflict(self, order_id: str, transaction_ref: str, reason: str, at: datetime) -> None:
        with self._lock:
            self.conflicts.append((order_id, transaction_ref, reason, at))


class ShippingStub(ShippingPort):
    """Stub implementation of ``ShippingPort``.

    Returns a fixed standard and express option for any Brazilian zip
    code; anything else is treated as an unreachable destination.
    """

    def __init__(self, options: Optional[List[ShippingOption]] = None):
        self.options = options or [
            ShippingOption(method="ship-1", cost_cents=1500, eta_days=5),
            ShippingOption(method="ship-express", cost_cents=3500, eta_days=2),
        ]
        self.calls = 0

    def quote(self, origin: str, destination: Destination, parcel: Parcel) -> List[ShippingOption]:
        self.calls += 1
        if destination.country != "BR":
            raise DestinationUnreachable(destination=destination.zip_code)
        return list(self.options)


class GatewayStub(PaymentGatewayPort):
    """Stub implementation of ``PaymentGatewayPort``.

    Approves charge creation for positive amounts and returns a generated
    transaction reference. Confirmation never happens by itself: tests and
    local tools set ``statuses[ref]`` (read by ``get_status``) or post a
    notification.
    """

    def __init__(self):
        self.charges: List[dict] = []
        self.statuses: Dict[str, str] = {}

    def create_charge(
        self,
        amount_cents: int,
        method: PaymentMethod,
        installments: int,
        payer: PayerInfo,
        reference: str,
    ) -> str:
        if amount_cents <= 0:
            raise GatewayError(amount_cents=amount_cents)
        ref = f"pay_{uuid.uuid4().hex[:16]}"
        self.charges.append(
            {
                "ref": ref,
                "amount_cents": amount_cents,
                "method": method,
                "installments": installments,
                "reference": reference,
            }
        )
        self.statuses[ref] = "PENDING"
        return ref

    def get_status(self, transaction_ref: str) -> str:
        return self.statuses.get(transaction_ref, "PENDING")
