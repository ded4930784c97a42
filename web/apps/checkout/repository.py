"""Repository layer backed by the Django ORM.

Implementations of the checkout ports that persist to the relational
database: ``LedgerRepository`` (stock ledger), ``CartRepository``,
``OrderRepository`` and ``RowLocks`` (per-order critical sections that
also work across worker processes). Each repository maps between ORM rows
and the domain dataclasses so the domain never sees model instances.
"""

import logging
import uuid
from collections import Counter
from contextlib import contextmanager
from datetime import timedelta
from typing import Callable, List, Optional, Tuple

from django.core.exceptions import ValidationError
from django.db import IntegrityError, OperationalError, connection, transaction
from django.db.models import F, Sum

from .domain import (
    Cart,
    CartLine,
    CartStorePort,
    CheckoutError,
    Destination,
    GatewayOutcome,
    InsufficientStock,
    LocksPort,
    Order,
    OrderBusy,
    OrderLine,
    OrderNotFound,
    OrderStatus,
    OrderStorePort,
    PayerInfo,
    PaymentAttempt,
    PaymentMethod,
    PaymentStatus,
    Reservation,
    ReservationExpired,
    ReservationStatus,
    ShippingOption,
    StatusEntry,
    StockLedgerPort,
    Variant,
    VariantNotFound,
    utcnow,
)
from .models import (
    AppliedEventModel,
    CartLineModel,
    OrderLineModel,
    OrderModel,
    OrderStatusModel,
    PaymentAttemptModel,
    ReconciliationConflictModel,
    ReservationLineModel,
    ReservationModel,
    VariantModel,
)

logger = logging.getLogger(__name__)


def _variant(row: VariantModel) -> Variant:
    return Variant(
        sku=row.sku,
        product_id=row.product_id,
        size=row.size,
        color=row.color,
        name=row.name,
        price_cents=row.price_cents,
        promo_price_cents=row.promo_price_cents,
        on_hand=row.on_hand,
        weight_grams=row.weight_grams,
    )


class LedgerRepository(StockLedgerPort):
    """Stock ledger persisted in the ``variants`` and ``reservations`` tables.

    ``reserve`` locks the touched variant rows (``SELECT ... FOR UPDATE``,
    in sku order so concurrent reservations cannot deadlock), expires
    stale holds on those variants, checks every line and only then writes.
    Any shortfall rolls back the whole transaction.
    """

    def __init__(self, ttl: timedelta = timedelta(minutes=15), clock: Callable = utcnow):
        self.ttl = ttl
        self.clock = clock

    def get_variant(self, product_id: str, size: Optional[str], color: Optional[str]) -> Variant:
        row = VariantModel.objects.filter(product_id=product_id, size=size, color=color).first()
        if row is None:
            raise VariantNotFound(product_id=product_id, size=size, color=color)
        return _variant(row)

    def upsert(self, variant: Variant) -> None:
        VariantModel.objects.update_or_create(
            sku=variant.sku,
            defaults={
                "product_id": variant.product_id,
                "size": variant.size,
                "color": variant.color,
                "name": variant.name,
                "price_cents": variant.price_cents,
                "promo_price_cents": variant.promo_price_cents,
                "on_hand": variant.on_hand,
                "weight_grams": variant.weight_grams,
            },
        )

    def _expire_stale(self, now, skus=None) -> int:
        qs = ReservationModel.objects.filter(status=ReservationModel.Status.ACTIVE, expires_at__lte=now)
        if skus is not None:
            qs = qs.filter(lines__variant_id__in=skus).distinct()
        ids = list(qs.values_list("id", flat=True))
        if not ids:
            return 0
        return ReservationModel.objects.filter(id__in=ids).update(
            status=ReservationModel.Status.EXPIRED, released_at=now
        )

    def available(self, sku: str) -> int:
        now = self.clock()
        row = VariantModel.objects.get(sku=sku)
        held = (
            ReservationLineModel.objects.filter(
                variant_id=sku,
                reservation__status=ReservationModel.Status.ACTIVE,
                reservation__expires_at__gt=now,
            ).aggregate(total=Sum("quantity"))["total"]
            or 0
        )
        return row.on_hand - held

    def reserve(self, items: List[Tuple[str, int]]) -> Reservation:
        wanted: Counter = Counter()
        for sku, qty in items:
            wanted[sku] += qty
        skus = sorted(wanted)

        now = self.clock()
        with transaction.atomic():
            rows = {r.sku: r for r in VariantModel.objects.select_for_update().filter(sku__in=skus).order_by("sku")}
            self._expire_stale(now, skus)
            held = dict(
                ReservationLineModel.objects.filter(
                    variant_id__in=skus, reservation__status=ReservationModel.Status.ACTIVE
                )
                .values_list("variant_id")
                .annotate(total=Sum("quantity"))
            )
            for sku in skus:
                qty = wanted[sku]
                row = rows.get(sku)
                if row is None:
                    raise InsufficientStock(sku, qty, 0)
                free = row.on_hand - held.get(sku, 0)
                if qty > free:
                    raise InsufficientStock(sku, qty, max(free, 0))

            res = ReservationModel.objects.create(expires_at=now + self.ttl)
            ReservationLineModel.objects.bulk_create(
                [ReservationLineModel(reservation=res, variant_id=sku, quantity=wanted[sku]) for sku in skus]
            )
        return Reservation(id=str(res.id), lines=[(sku, wanted[sku]) for sku in skus], expires_at=res.expires_at)

    def release(self, reservation_id: str) -> None:
        ReservationModel.objects.filter(id=reservation_id, status=ReservationModel.Status.ACTIVE).update(
            status=ReservationModel.Status.RELEASED, released_at=self.clock()
        )

    def commit(self, reservation_id: str) -> None:
        now = self.clock()
        with transaction.atomic():
            res = ReservationModel.objects.select_for_update().filter(id=reservation_id).first()
            if res is None:
                raise ReservationExpired(reservation_id=reservation_id)
            if res.status == ReservationModel.Status.COMMITTED:
                return
            if res.status == ReservationModel.Status.ACTIVE and now >= res.expires_at:
                res.status = ReservationModel.Status.EXPIRED
                res.released_at = now
                res.save(update_fields=["status", "released_at"])
            if res.status != ReservationModel.Status.ACTIVE:
                error = ReservationExpired(reservation_id=reservation_id, status=res.status)
            else:
                lines = list(res.lines.order_by("variant_id"))
                # lock rows in the same order as reserve()
                list(VariantModel.objects.select_for_update().filter(sku__in=[l.variant_id for l in lines]).order_by("sku"))
                for line in lines:
                    VariantModel.objects.filter(sku=line.variant_id).update(on_hand=F("on_hand") - line.quantity)
                res.status = ReservationModel.Status.COMMITTED
                res.committed_at = now
                res.save(update_fields=["status", "committed_at"])
                return
        # raised outside the atomic block so the EXPIRED mark is kept
        raise error

    def sweep_expired(self) -> int:
        return self._expire_stale(self.clock())

    def reservation_status(self, reservation_id: str) -> ReservationStatus:
        return ReservationStatus(ReservationModel.objects.get(id=reservation_id).status)


class CartRepository(CartStorePort):
    def load(self, owner_id: str) -> Cart:
        lines = [
            CartLine(
                product_id=row.product_id,
                size=row.size,
                color=row.color,
                quantity=row.quantity,
                price_snapshot_cents=row.price_snapshot_cents,
            )
            for row in CartLineModel.objects.filter(owner_id=owner_id).order_by("position")
        ]
        return Cart(owner_id=owner_id, lines=lines)

    @transaction.atomic
    def save(self, cart: Cart) -> None:
        CartLineModel.objects.filter(owner_id=cart.owner_id).delete()
        CartLineModel.objects.bulk_create(
            [
                CartLineModel(
                    owner_id=cart.owner_id,
                    position=i,
                    product_id=line.product_id,
                    size=line.size,
                    color=line.color,
                    quantity=line.quantity,
                    price_snapshot_cents=line.price_snapshot_cents,
                )
                for i, line in enumerate(cart.lines)
            ]
        )


def _attempt(row: PaymentAttemptModel) -> PaymentAttempt:
    return PaymentAttempt(
        transaction_ref=row.transaction_ref,
        method=PaymentMethod(row.method),
        amount_cents=row.amount_cents,
        installments=row.installments,
        status=PaymentStatus(row.status),
        created_at=row.created_at,
    )


def _order(row: OrderModel) -> Order:
    payer = None
    if row.payer_name or row.payer_email:
        payer = PayerInfo(name=row.payer_name, email=row.payer_email, document=row.payer_document)
    return Order(
        id=str(row.id),
        owner_id=row.owner_id,
        lines=[
            OrderLine(
                sku=l.sku,
                product_id=l.product_id,
                size=l.size,
                color=l.color,
                name=l.name,
                quantity=l.quantity,
                unit_price_cents=l.unit_price_cents,
                weight_grams=l.weight_grams,
            )
            for l in row.lines.all()
        ],
        destination=Destination(zip_code=row.zip_code, city=row.city, state=row.state, country=row.country),
        shipping=ShippingOption(
            method=row.shipping_method, cost_cents=row.shipping_cents, eta_days=row.shipping_eta_days
        ),
        status=OrderStatus(row.status),
        currency=row.currency,
        payment_method=PaymentMethod(row.payment_method) if row.payment_method else None,
        payer=payer,
        installments=row.installments,
        reservation_id=str(row.reservation_id) if row.reservation_id else None,
        expires_at=row.expires_at,
        reconciliation_required=row.reconciliation_required,
        history=[StatusEntry(status=OrderStatus(h.status), reason=h.reason, at=h.at) for h in row.history.all()],
        attempts=[_attempt(a) for a in row.attempts.all()],
        created_at=row.created_at,
    )


class OrderRepository(OrderStorePort):
    """Repository that persists Order domain objects using Django ORM.

    The line snapshot is written once by ``create``; afterwards only the
    mutable fields change through ``save`` and history only grows through
    ``append_status``.
    """

    def _queryset(self):
        return OrderModel.objects.prefetch_related("lines", "history", "attempts")

    @transaction.atomic
    def create(self, order: Order) -> None:
        payer = order.payer or PayerInfo(name="", email="")
        obj = OrderModel.objects.create(
            id=order.id,
            owner_id=order.owner_id,
            status=order.status.value,
            currency=order.currency,
            zip_code=order.destination.zip_code,
            city=order.destination.city,
            state=order.destination.state,
            country=order.destination.country,
            shipping_method=order.shipping.method,
            shipping_cents=order.shipping.cost_cents,
            shipping_eta_days=order.shipping.eta_days,
            payment_method=order.payment_method.value if order.payment_method else None,
            installments=order.installments,
            payer_name=payer.name,
            payer_email=payer.email,
            payer_document=payer.document,
            reservation_id=order.reservation_id,
            expires_at=order.expires_at,
        )
        OrderLineModel.objects.bulk_create(
            [
                OrderLineModel(
                    order=obj,
                    position=i,
                    sku=line.sku,
                    product_id=line.product_id,
                    size=line.size,
                    color=line.color,
                    name=line.name,
                    quantity=line.quantity,
                    unit_price_cents=line.unit_price_cents,
                    weight_grams=line.weight_grams,
                )
                for i, line in enumerate(order.lines)
            ]
        )
        order.created_at = obj.created_at

    def get(self, order_id: str) -> Order:
        try:
            return _order(self._queryset().get(id=order_id))
        except (OrderModel.DoesNotExist, ValidationError, ValueError):
            raise OrderNotFound(order_id=order_id)

    def save(self, order: Order) -> None:
        payer = order.payer or PayerInfo(name="", email="")
        OrderModel.objects.filter(id=order.id).update(
            status=order.status.value,
            payment_method=order.payment_method.value if order.payment_method else None,
            installments=order.installments,
            payer_name=payer.name,
            payer_email=payer.email,
            payer_document=payer.document,
            reservation_id=order.reservation_id,
            expires_at=order.expires_at,
            reconciliation_required=order.reconciliation_required,
        )

    def append_status(self, order_id: str, status: OrderStatus, reason: str, at) -> None:
        OrderStatusModel.objects.create(order_id=order_id, status=status.value, reason=reason[:255], at=at)

    def list_by_owner(self, owner_id: str) -> List[Order]:
        return [_order(o) for o in self._queryset().filter(owner_id=owner_id).order_by("-created_at")]

    def list_open(self) -> List[Order]:
        open_statuses = [s.value for s in OrderStatus if not s.terminal]
        return [_order(o) for o in self._queryset().filter(status__in=open_statuses)]

    def add_attempt(self, order_id: str, attempt: PaymentAttempt) -> None:
        PaymentAttemptModel.objects.create(
            order_id=order_id,
            transaction_ref=attempt.transaction_ref,
            method=attempt.method.value,
            amount_cents=attempt.amount_cents,
            installments=attempt.installments,
            status=attempt.status.value,
            created_at=attempt.created_at or utcnow(),
        )

    def update_attempt(self, order_id: str, attempt: PaymentAttempt) -> None:
        PaymentAttemptModel.objects.filter(order_id=order_id, transaction_ref=attempt.transaction_ref).update(
            status=attempt.status.value
        )

    def find_by_transaction(self, transaction_ref: str) -> Optional[str]:
        order_id = (
            PaymentAttemptModel.objects.filter(transaction_ref=transaction_ref)
            .values_list("order_id", flat=True)
            .first()
        )
        return str(order_id) if order_id else None

    def mark_event_applied(self, order_id: str, transaction_ref: str, outcome: GatewayOutcome) -> bool:
        try:
            # savepoint: only this insert is rolled back on a duplicate
            with transaction.atomic():
                AppliedEventModel.objects.create(order_id=order_id, transaction_ref=transaction_ref, outcome=outcome.value)
            return True
        except IntegrityError:
            return False

    def record_conflict(self, order_id: str, transaction_ref: str, reason: str, at) -> None:
        ReconciliationConflictModel.objects.create(
            order_id=order_id, transaction_ref=transaction_ref, reason=reason[:255], at=at
        )


class RowLocks(LocksPort):
    """Per-order critical section using the order row's lock.

    The section runs in one database transaction holding
    ``SELECT ... FOR UPDATE`` on the order row, so it serializes across
    worker processes. Domain errors raised inside still commit what was
    written before them (for example a PAYMENT_FAILED transition); any
    other exception rolls the section back.
    """

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout

    @contextmanager
    def hold(self, order_id: str):
        try:
            uuid.UUID(str(order_id))
        except ValueError:
            raise OrderNotFound(order_id=order_id)
        error = None
        try:
            with transaction.atomic():
                if connection.vendor == "postgresql":
                    with connection.cursor() as cur:
                        cur.execute("SET LOCAL lock_timeout = %s", [f"{int(self.timeout * 1000)}ms"])
                list(OrderModel.objects.select_for_update().filter(id=order_id).values_list("id", flat=True))
                try:
                    yield
                except CheckoutError as exc:
                    error = exc
        except OperationalError as exc:
            logger.warning("order row lock not acquired", extra={"order_id": str(order_id), "error": str(exc)})
            raise OrderBusy(order_id=order_id) from exc
        if error is not None:
            raise error
