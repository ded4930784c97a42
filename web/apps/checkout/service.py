"""Checkout orchestration.

``CheckoutService`` drives a cart through quoting, stock reservation,
payment initiation and gateway confirmation into a terminal order state.
It owns the order state machine (``domain.TRANSITIONS``), the retry
budgets for the two network calls on the critical path and the
idempotency of gateway notifications.

Every state change for one order happens inside ``locks.hold(order_id)``.
Gateway notifications arrive as separate calls and take the same lock,
so a confirmation never interleaves with an expiry check or a cancel for
the same order, while different orders never wait on each other.

The gateway charge call is the one network call made for an existing
order, and it runs with the lock released: the PAYMENT_PENDING state and
its reservation are stored first, the charge is created, and the lock is
taken again to record the attempt against the order as it then stands.
"""

import logging
import time
import uuid
from typing import Callable, List, Optional, Tuple

from . import pricing
from .cart import CartService
from .config import CheckoutConfig
from .domain import (
    Ack,
    CancellationRejected,
    CartInvalid,
    Destination,
    DestinationUnreachable,
    DispatcherPort,
    EmptyCart,
    GatewayError,
    GatewayOutcome,
    InsufficientStock,
    InvalidTransition,
    LocksPort,
    NotifierPort,
    Order,
    OrderLine,
    OrderNotFound,
    OrderStatus,
    OrderStorePort,
    Parcel,
    PayerInfo,
    PaymentAttempt,
    PaymentGatewayPort,
    PaymentMethod,
    PaymentMethodDisabled,
    PaymentResult,
    PaymentStatus,
    ReceiptPort,
    ReservationExpired,
    ShippingOption,
    ShippingPort,
    ShippingUnavailable,
    StatusEntry,
    StockLedgerPort,
    TRANSITIONS,
    VariantNotFound,
    utcnow,
)
from .locks import KeyedLocks
from .retry import call_with_retry

logger = logging.getLogger(__name__)

# Transport-level failures an adapter may let through unwrapped.
_TRANSIENT = (TimeoutError, ConnectionError)


class InlineDispatcher:
    """Runs submitted work immediately in the calling thread."""

    def submit(self, fn: Callable, *args):
        return fn(*args)


class CheckoutService:
    """Checkout orchestrator.

    Args:
        ledger: Pricing and stock ledger.
        carts: Cart aggregator the checkout reads from and clears once paid.
        orders: Durable order store.
        shipping: Shipping quote adapter.
        gateway: Payment gateway adapter.
        config: Store configuration snapshot.
        locks: Per-order critical sections; defaults to in-process locks.
        receipts: Receipt renderer used by fulfillment.
        notifier: Customer notification used by fulfillment.
        dispatcher: Where fulfillment runs (``submit(fn, *args)``);
            defaults to running inline.
        clock: Returns the current aware datetime.
        sleep: Used between retries.
    """

    def __init__(
        self,
        ledger: StockLedgerPort,
        carts: CartService,
        orders: OrderStorePort,
        shipping: ShippingPort,
        gateway: PaymentGatewayPort,
        config: Optional[CheckoutConfig] = None,
        locks: Optional[LocksPort] = None,
        receipts: Optional[ReceiptPort] = None,
        notifier: Optional[NotifierPort] = None,
        dispatcher: Optional[DispatcherPort] = None,
        clock: Callable = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.ledger = ledger
        self.carts = carts
        self.orders = orders
        self.shipping = shipping
        self.gateway = gateway
        self.config = config or CheckoutConfig()
        self.locks = locks or KeyedLocks(timeout=self.config.lock_timeout)
        self.receipts = receipts
        self.notifier = notifier
        self.dispatcher = dispatcher or InlineDispatcher()
        self.clock = clock
        self.sleep = sleep

    # ---- state machine ----
    def _transition(self, order: Order, status: OrderStatus, reason: str) -> None:
        if status not in TRANSITIONS.get(order.status, ()):
            raise InvalidTransition(order_id=order.id, current=order.status.value, target=status.value)
        now = self.clock()
        order.status = status
        self.orders.save(order)
        self.orders.append_status(order.id, status, reason, now)
        order.history.append(StatusEntry(status=status, reason=reason, at=now))
        logger.info("order status changed", extra={"order_id": order.id, "status": status.value, "reason": reason})

    def _supersede_pending(self, order: Order) -> None:
        for attempt in order.attempts:
            if attempt.status is PaymentStatus.PENDING:
                attempt.status = PaymentStatus.SUPERSEDED
                self.orders.update_attempt(order.id, attempt)

    def _expire_if_due(self, order: Order) -> bool:
        """Lazily move a pre-payment order past its deadline to EXPIRED."""
        if not order.status.pre_payment or order.expires_at is None:
            return False
        if self.clock() < order.expires_at:
            return False
        if order.reservation_id:
            self.ledger.release(order.reservation_id)
        self._supersede_pending(order)
        reason = "reservation expired" if order.reservation_id else "checkout quote expired"
        self._transition(order, OrderStatus.EXPIRED, reason)
        return True

    # ---- checkout start ----
    def _snapshot_lines(self, owner_id: str) -> List[OrderLine]:
        cart = self.carts.snapshot(owner_id)
        if cart.is_empty:
            raise EmptyCart(owner_id=owner_id)

        lines: List[OrderLine] = []
        problems = []
        for line in cart.lines:
            try:
                variant = self.ledger.get_variant(line.product_id, line.size, line.color)
            except VariantNotFound:
                problems.append((line.key, "NOT_FOUND"))
                continue
            if variant.on_hand <= 0:
                problems.append((line.key, "OUT_OF_STOCK"))
                continue
            lines.append(
                OrderLine(
                    sku=variant.sku,
                    product_id=variant.product_id,
                    size=variant.size,
                    color=variant.color,
                    name=variant.name,
                    quantity=line.quantity,
                    unit_price_cents=variant.unit_price_cents,
                    weight_grams=variant.weight_grams,
                )
            )
        if problems:
            raise CartInvalid(problems)
        return lines

    def _quote(self, destination: Destination, lines: List[OrderLine]) -> List[ShippingOption]:
        parcel = Parcel(
            weight_grams=sum(line.weight_grams * line.quantity for line in lines),
            items=sum(line.quantity for line in lines),
        )
        try:
            options = call_with_retry(
                lambda: self.shipping.quote(self.config.origin_zip, destination, parcel),
                attempts=self.config.shipping_retry_max,
                retry_on=(ShippingUnavailable,) + _TRANSIENT,
                give_up_on=(DestinationUnreachable,),
                backoff_base=self.config.retry_backoff_base,
                max_sleep=self.config.retry_max_sleep,
                sleep=self.sleep,
                label="shipping quote",
            )
        except _TRANSIENT as exc:
            raise ShippingUnavailable(destination=destination.zip_code) from exc
        if not options:
            raise ShippingUnavailable(destination=destination.zip_code)
        return options

    def start_checkout(self, owner_id: str, destination: Destination, shipping_method: Optional[str] = None) -> Order:
        """Freeze the cart into a quoted order.

        Raises:
            EmptyCart: The owner's cart has no lines.
            CartInvalid: Some lines refer to missing or sold-out variants.
            ShippingUnavailable: No quote after the retry budget, or the
                requested method is not offered.
            DestinationUnreachable: The carrier refused the destination;
                raised on the first refusal.
        """
        lines = self._snapshot_lines(owner_id)
        subtotal = pricing.subtotal_cents(lines)

        options = pricing.apply_free_shipping(self._quote(destination, lines), subtotal, self.config)
        choice = pricing.pick_shipping(options, shipping_method, self.config.default_shipping_method)
        if choice is None:
            raise ShippingUnavailable(method=shipping_method)

        now = self.clock()
        order = Order(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            lines=lines,
            destination=destination,
            shipping=choice,
            currency=self.config.currency,
            expires_at=now + self.config.quote_ttl,
            created_at=now,
        )
        self.orders.create(order)
        self.orders.append_status(order.id, OrderStatus.INITIATED, "checkout started", now)
        order.history.append(StatusEntry(status=OrderStatus.INITIATED, reason="checkout started", at=now))
        self._transition(order, OrderStatus.QUOTED, f"shipping {choice.method} quoted at {choice.cost_cents}")
        return order

    # ---- payment ----
    def _create_charge(self, order: Order) -> str:
        payer = order.payer or PayerInfo(name=order.owner_id, email="")
        # one reference per attempt; retries of the same attempt reuse it
        reference = f"{order.id}:{len(order.attempts) + 1}"
        try:
            return call_with_retry(
                lambda: self.gateway.create_charge(
                    order.total_cents, order.payment_method, order.installments, payer, reference
                ),
                attempts=1 + self.config.gateway_retry_limit,
                retry_on=(GatewayError,) + _TRANSIENT,
                backoff_base=self.config.retry_backoff_base,
                max_sleep=self.config.retry_max_sleep,
                sleep=self.sleep,
                label="charge creation",
            )
        except _TRANSIENT as exc:
            raise GatewayError(order_id=order.id) from exc

    def _charge(self, pending: Order) -> Tuple[Order, PaymentAttempt]:
        """Create a charge for a PAYMENT_PENDING order and record it.

        Must be called without holding the order lock. ``pending`` is the
        order as stored when it entered PAYMENT_PENDING; the attempt is
        recorded against the order as it is once the gateway answered. If
        the order moved on meanwhile (canceled, expired) the attempt is
        kept as SUPERSEDED, so a payment on it later shows up as a
        reconciliation conflict.

        Raises:
            GatewayError: Charge creation failed after its retry; the
                reservation is released and the order ends PAYMENT_FAILED
                unless it already left PAYMENT_PENDING.
        """
        try:
            ref = self._create_charge(pending)
        except GatewayError:
            with self.locks.hold(pending.id):
                order = self.orders.get(pending.id)
                if self._awaits_charge(order, pending):
                    self.ledger.release(order.reservation_id)
                    self._transition(order, OrderStatus.PAYMENT_FAILED, "GATEWAY_ERROR")
            raise

        with self.locks.hold(pending.id):
            order = self.orders.get(pending.id)
            attempt = PaymentAttempt(
                transaction_ref=ref,
                method=pending.payment_method,
                amount_cents=pending.total_cents,
                installments=pending.installments,
                created_at=self.clock(),
            )
            if not self._awaits_charge(order, pending):
                attempt.status = PaymentStatus.SUPERSEDED
                logger.warning(
                    "charge created for an order no longer awaiting it",
                    extra={"order_id": order.id, "transaction_ref": ref, "status": order.status.value},
                )
            self.orders.add_attempt(order.id, attempt)
            order.attempts.append(attempt)
        logger.info("charge created", extra={"order_id": order.id, "transaction_ref": ref})
        return order, attempt

    @staticmethod
    def _awaits_charge(order: Order, pending: Order) -> bool:
        return (
            order.status is OrderStatus.PAYMENT_PENDING
            and order.reservation_id == pending.reservation_id
            and order.active_attempt is None
        )

    def _reserve(self, order: Order) -> None:
        reservation = self.ledger.reserve([(line.sku, line.quantity) for line in order.lines])
        order.reservation_id = reservation.id
        order.expires_at = reservation.expires_at

    def choose_payment_method(
        self,
        order_id: str,
        method: PaymentMethod,
        installments: int = 1,
        payer: Optional[PayerInfo] = None,
    ) -> PaymentResult:
        """Reserve stock, price the order and create the gateway charge.

        The order is stored as PAYMENT_PENDING, and the lock released,
        before the gateway is called, so a crash during the call leaves a
        record pointing at a reservation that the TTL bounds.

        Raises:
            PaymentMethodDisabled: The store does not accept ``method``.
            InsufficientStock: Stock cannot be held; the checkout stays
                QUOTED with nothing reserved.
            GatewayError: Charge creation failed after its retry; the
                order ends PAYMENT_FAILED and the stock is released.
            InvalidTransition: The checkout is not awaiting a payment
                choice (``CHECKOUT_EXPIRED`` once it has expired), or it
                was canceled while the charge was being created.
        """
        method = PaymentMethod(method)
        with self.locks.hold(order_id):
            order = self.orders.get(order_id)
            if self._expire_if_due(order) or order.status is OrderStatus.EXPIRED:
                raise InvalidTransition("CHECKOUT_EXPIRED", order_id=order_id)
            if order.status is not OrderStatus.QUOTED:
                raise InvalidTransition(order_id=order_id, current=order.status.value)
            if method not in self.config.payment_methods:
                raise PaymentMethodDisabled(method=method.value)

            try:
                self._reserve(order)
            except InsufficientStock as exc:
                logger.info(
                    "reservation refused",
                    extra={"order_id": order_id, "sku": exc.sku, "requested": exc.requested, "available": exc.available},
                )
                raise
            self._transition(order, OrderStatus.RESERVED, f"stock held by {order.reservation_id}")

            plan = pricing.installment_plan(order.total_cents, installments, method, self.config)
            order.payment_method = method
            order.installments = plan.count
            order.payer = payer
            reason = f"awaiting {method.value} payment of {order.total_cents} in {plan.count}x"
            if plan.adjusted:
                reason += f" (requested {plan.requested}x)"
            self._transition(order, OrderStatus.PAYMENT_PENDING, reason)

        order, attempt = self._charge(order)
        if attempt.status is PaymentStatus.SUPERSEDED:
            raise InvalidTransition(order_id=order_id, current=order.status.value)
        return PaymentResult(
            order_id=order.id,
            status=order.status,
            transaction_ref=attempt.transaction_ref,
            total_cents=order.total_cents,
            plan=plan,
        )

    # ---- confirmation ----
    def apply_confirmation(self, transaction_ref: str, raw_status: str, order_id: Optional[str] = None) -> Ack:
        """Apply a gateway notification or poll result.

        Webhooks and polls land here alike. Events are keyed by
        ``(order id, transaction ref, outcome)``; an event already applied
        is acknowledged without effect.
        """
        outcome = GatewayOutcome.from_gateway(raw_status)
        target = self.orders.find_by_transaction(transaction_ref) or order_id
        if target is None:
            logger.warning("notification for unknown transaction", extra={"transaction_ref": transaction_ref})
            return Ack(order_id=None, applied=False)

        with self.locks.hold(target):
            try:
                order = self.orders.get(target)
            except OrderNotFound:
                logger.warning("notification for unknown order", extra={"order_id": target})
                return Ack(order_id=None, applied=False)

            attempt = next((a for a in order.attempts if a.transaction_ref == transaction_ref), None)
            if outcome in (GatewayOutcome.PENDING, GatewayOutcome.UNKNOWN):
                return Ack(order_id=order.id, applied=False, status=order.status)
            if attempt is None and outcome is not GatewayOutcome.PAID:
                logger.warning(
                    "notification does not match any attempt",
                    extra={"order_id": order.id, "transaction_ref": transaction_ref},
                )
                return Ack(order_id=order.id, applied=False, status=order.status)
            if not self.orders.mark_event_applied(order.id, transaction_ref, outcome):
                logger.info(
                    "duplicate notification ignored",
                    extra={"order_id": order.id, "transaction_ref": transaction_ref, "outcome": outcome.value},
                )
                return Ack(order_id=order.id, applied=False, duplicate=True, status=order.status)

            if attempt is None:
                # charge created but never recorded, e.g. a crash before the attempt was stored
                return self._conflict(order, transaction_ref, "payment confirmed for an unrecorded charge")

            self._expire_if_due(order)
            if outcome is GatewayOutcome.PAID:
                ack = self._on_paid(order, attempt)
            else:
                ack = self._on_failed(order, attempt)

        if ack.status is OrderStatus.PAID and not ack.conflict:
            self.dispatcher.submit(self.fulfill, order.id)
        elif outcome is GatewayOutcome.FAILED and ack.applied and ack.status is OrderStatus.PAYMENT_PENDING:
            # the declined attempt was replaced by a new hold; charge it with the lock released
            try:
                order, _ = self._charge(order)
            except GatewayError:
                order = self.orders.get(order.id)
            ack = Ack(order_id=order.id, applied=True, status=order.status)
        return ack

    def _conflict(self, order: Order, transaction_ref: str, reason: str) -> Ack:
        order.reconciliation_required = True
        self.orders.save(order)
        self.orders.record_conflict(order.id, transaction_ref, reason, self.clock())
        logger.warning(
            "reconciliation conflict",
            extra={
                "order_id": order.id,
                "transaction_ref": transaction_ref,
                "status": order.status.value,
                "reason": reason,
            },
        )
        return Ack(order_id=order.id, applied=True, conflict=True, status=order.status)

    def _on_paid(self, order: Order, attempt: PaymentAttempt) -> Ack:
        was_active = attempt.status is PaymentStatus.PENDING
        attempt.status = PaymentStatus.CONFIRMED
        self.orders.update_attempt(order.id, attempt)

        if not was_active or order.status is not OrderStatus.PAYMENT_PENDING:
            # funds were captured for an order that can no longer be fulfilled
            return self._conflict(
                order, attempt.transaction_ref, f"payment confirmed while order {order.status.value}"
            )

        try:
            self.ledger.commit(order.reservation_id)
        except ReservationExpired:
            self._transition(order, OrderStatus.EXPIRED, "reservation expired before payment confirmation")
            return self._conflict(order, attempt.transaction_ref, "payment confirmed after reservation expired")

        self._transition(order, OrderStatus.PAID, f"payment {attempt.transaction_ref} confirmed")
        self.carts.clear(order.owner_id)
        return Ack(order_id=order.id, applied=True, status=order.status)

    def _on_failed(self, order: Order, attempt: PaymentAttempt) -> Ack:
        if attempt.status is not PaymentStatus.PENDING or order.status is not OrderStatus.PAYMENT_PENDING:
            logger.info(
                "failure for inactive attempt ignored",
                extra={"order_id": order.id, "transaction_ref": attempt.transaction_ref},
            )
            return Ack(order_id=order.id, applied=False, status=order.status)

        attempt.status = PaymentStatus.FAILED
        self.orders.update_attempt(order.id, attempt)
        self.ledger.release(order.reservation_id)

        declines = sum(1 for a in order.attempts if a.status is PaymentStatus.FAILED)
        if declines > self.config.payment_retry_limit:
            self._transition(order, OrderStatus.PAYMENT_FAILED, f"payment {attempt.transaction_ref} declined")
            return Ack(order_id=order.id, applied=True, status=order.status)

        # automatic retry: the first hold was released, take a new one
        try:
            self._reserve(order)
        except InsufficientStock:
            self._transition(order, OrderStatus.PAYMENT_FAILED, "declined; stock no longer available for retry")
            return Ack(order_id=order.id, applied=True, status=order.status)
        self._transition(
            order,
            OrderStatus.PAYMENT_PENDING,
            f"payment {attempt.transaction_ref} declined; retrying with a new charge",
        )
        # apply_confirmation creates the new charge once the lock is released
        return Ack(order_id=order.id, applied=True, status=order.status)

    def poll_payment(self, order_id: str) -> Ack:
        """Ask the gateway about the active attempt and apply the answer."""
        order = self.orders.get(order_id)
        attempt = order.active_attempt
        if attempt is None:
            return Ack(order_id=order.id, applied=False, status=order.status)
        raw = self.gateway.get_status(attempt.transaction_ref)
        return self.apply_confirmation(attempt.transaction_ref, raw, order_id=order.id)

    # ---- cancellation / reads / maintenance ----
    def cancel(self, order_id: str, reason: str = "canceled by customer") -> Order:
        """Cancel a checkout that has not been paid.

        Raises:
            CancellationRejected: Payment is already recorded; a refund
                workflow applies instead.
            InvalidTransition: The order already ended another way.
        """
        with self.locks.hold(order_id):
            order = self.orders.get(order_id)
            self._expire_if_due(order)
            if order.status is OrderStatus.CANCELED:
                return order
            if order.status in (OrderStatus.PAID, OrderStatus.FULFILLING, OrderStatus.COMPLETED):
                raise CancellationRejected(order_id=order_id, status=order.status.value)
            if not order.status.pre_payment:
                raise InvalidTransition(order_id=order_id, current=order.status.value)

            if order.reservation_id:
                self.ledger.release(order.reservation_id)
            self._supersede_pending(order)
            self._transition(order, OrderStatus.CANCELED, reason)
            return order

    def get_order_status(self, order_id: str) -> Order:
        with self.locks.hold(order_id):
            order = self.orders.get(order_id)
            self._expire_if_due(order)
            return order

    def list_orders(self, owner_id: str) -> List[Order]:
        return self.orders.list_by_owner(owner_id)

    def expire_stale(self) -> int:
        """Expire every open order past its deadline; return how many."""
        now = self.clock()
        expired = 0
        for order in self.orders.list_open():
            if not order.status.pre_payment or order.expires_at is None or now < order.expires_at:
                continue
            with self.locks.hold(order.id):
                if self._expire_if_due(self.orders.get(order.id)):
                    expired += 1
        swept = self.ledger.sweep_expired()
        logger.info("expiry sweep finished", extra={"orders_expired": expired, "reservations_swept": swept})
        return expired

    def resume_fulfillment(self) -> int:
        """Re-dispatch fulfillment for paid orders that did not complete.

        Covers orders fulfillment never started for (PAID) and orders
        whose fulfillment failed or was interrupted (FULFILLING). Returns
        how many orders were dispatched.
        """
        resumed = 0
        for order in self.orders.list_open():
            if order.status is OrderStatus.PAID:
                self.dispatcher.submit(self.fulfill, order.id)
            elif order.status is OrderStatus.FULFILLING:
                self.dispatcher.submit(self.retry_fulfillment, order.id)
            else:
                continue
            resumed += 1
        return resumed

    # ---- fulfillment ----
    def fulfill(self, order_id: str) -> Order:
        """Run PAID -> FULFILLING -> COMPLETED once for ``order_id``."""
        with self.locks.hold(order_id):
            order = self.orders.get(order_id)
            if order.status is not OrderStatus.PAID:
                return order
            self._transition(order, OrderStatus.FULFILLING, "fulfillment started")
        return self._run_fulfillment(order)

    def retry_fulfillment(self, order_id: str) -> Order:
        order = self.orders.get(order_id)
        if order.status is OrderStatus.PAID:
            return self.fulfill(order_id)
        if order.status is not OrderStatus.FULFILLING:
            raise InvalidTransition(order_id=order_id, current=order.status.value)
        return self._run_fulfillment(order)

    def _run_fulfillment(self, order: Order) -> Order:
        try:
            receipt = self.receipts.render(order) if self.receipts else ""
            if self.notifier:
                self.notifier.order_completed(order, receipt)
        except Exception as exc:
            # stays FULFILLING until resume_fulfillment runs it again
            logger.exception("fulfillment failed", extra={"order_id": order.id})
            with self.locks.hold(order.id):
                order = self.orders.get(order.id)
                if order.status is OrderStatus.FULFILLING:
                    self._transition(order, OrderStatus.FULFILLING, f"fulfillment failed: {exc}")
            return order

        with self.locks.hold(order.id):
            order = self.orders.get(order.id)
            if order.status is OrderStatus.FULFILLING:
                self._transition(order, OrderStatus.COMPLETED, "receipt sent")
            return order
