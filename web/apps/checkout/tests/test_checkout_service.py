"""Checkout orchestration over in-memory adapters.

Covers the order state machine end to end: quoting, reservation,
payment, confirmation (including duplicates, late and conflicting
notifications), retries of the network calls, expiry, cancellation and
fulfillment.
"""
import threading

import pytest

from apps.checkout.adapters import GatewayStub, InMemoryOrderStore, ShippingStub
from apps.checkout.domain import (
    CancellationRejected,
    CartInvalid,
    Destination,
    DestinationUnreachable,
    EmptyCart,
    GatewayError,
    InsufficientStock,
    InvalidTransition,
    OrderStatus,
    PayerInfo,
    PaymentMethod,
    PaymentMethodDisabled,
    PaymentStatus,
    ShippingOption,
    ShippingUnavailable,
    Variant,
)

SP = Destination(zip_code="01310-100", city="Sao Paulo", state="SP")
PAYER = PayerInfo(name="Ana", email="ana@example.com")


def quoted(service, owner="session:a", qty=2, **kwargs):
    service.carts.add_item(owner, "tee", "M", "black", qty)
    return service.start_checkout(owner, SP, **kwargs)


def statuses(order):
    return [h.status for h in order.history]


class FlakyShipping(ShippingStub):
    def __init__(self, failures, exc=ShippingUnavailable):
        super().__init__()
        self.failures = failures
        self.exc = exc

    def quote(self, origin, destination, parcel):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc()
        return list(self.options)


class FlakyGateway(GatewayStub):
    def __init__(self, failures):
        super().__init__()
        self.failures = failures
        self.calls = 0

    def create_charge(self, amount_cents, method, installments, payer, reference):
        self.calls += 1
        if self.calls <= self.failures:
            raise GatewayError(reference=reference)
        return super().create_charge(amount_cents, method, installments, payer, reference)


class CrashingGateway(GatewayStub):
    """Creates the charge upstream, then dies before the caller records it."""

    def create_charge(self, amount_cents, method, installments, payer, reference):
        super().create_charge(amount_cents, method, installments, payer, reference)
        raise RuntimeError("worker killed")


class CancelingGateway(GatewayStub):
    """Lets the customer cancel while the charge request is in flight."""

    def __init__(self):
        super().__init__()
        self.service = None

    def create_charge(self, amount_cents, method, installments, payer, reference):
        self.service.cancel(reference.split(":", 1)[0])
        return super().create_charge(amount_cents, method, installments, payer, reference)


class RecordingDispatcher:
    def __init__(self):
        self.submitted = []

    def submit(self, fn, *args):
        self.submitted.append((fn, args))


# ---- start_checkout ----
def test_start_checkout_freezes_cart_into_quoted_order(make_service):
    service = make_service()
    order = quoted(service)

    assert order.status is OrderStatus.QUOTED
    assert statuses(order) == [OrderStatus.INITIATED, OrderStatus.QUOTED]
    assert order.subtotal_cents == 20000
    assert order.shipping.method == "ship-1"
    assert order.total_cents == 21500
    assert [(l.sku, l.quantity, l.unit_price_cents) for l in order.lines] == [("TEE-M-BLK", 2, 10000)]
    stored = service.orders.get(order.id)
    assert stored.status is OrderStatus.QUOTED
    assert len(stored.history) == 2


def test_price_changes_after_quote_do_not_touch_the_order(make_service, ledger):
    service = make_service()
    order = quoted(service)
    ledger.add_variant(
        Variant(sku="TEE-M-BLK", product_id="tee", size="M", color="black", price_cents=99900, on_hand=5)
    )
    assert service.orders.get(order.id).total_cents == 21500


def test_empty_cart_is_rejected(make_service):
    service = make_service()
    with pytest.raises(EmptyCart):
        service.start_checkout("session:a", SP)


def test_cart_lines_missing_or_sold_out_are_reported(make_service, ledger):
    ledger.add_variant(Variant(sku="SOLD-OUT", product_id="hoodie", size="L", price_cents=20000, on_hand=0))
    service = make_service()
    service.carts.add_item("session:a", "tee", "M", "black", 1)
    service.carts.add_item("session:a", "ghost", None, None, 1)
    service.carts.add_item("session:a", "hoodie", "L", None, 1)

    with pytest.raises(CartInvalid) as exc:
        service.start_checkout("session:a", SP)
    assert exc.value.lines == [(("ghost", None, None), "NOT_FOUND"), (("hoodie", "L", None), "OUT_OF_STOCK")]
    assert service.list_orders("session:a") == []


def test_free_shipping_from_threshold(make_service):
    service = make_service()
    order = quoted(service, qty=3)
    assert order.shipping.cost_cents == 0
    assert order.total_cents == 30000


def test_requested_shipping_method(make_service):
    service = make_service()
    order = quoted(service, shipping_method="ship-express")
    assert order.shipping == ShippingOption("ship-express", 3500, 2)


def test_unknown_shipping_method_is_unavailable(make_service):
    service = make_service()
    with pytest.raises(ShippingUnavailable):
        quoted(service, shipping_method="drone")


def test_shipping_quote_is_retried_then_succeeds(make_service):
    shipping = FlakyShipping(failures=2)
    service = make_service(shipping=shipping)
    order = quoted(service)
    assert order.status is OrderStatus.QUOTED
    assert shipping.calls == 3


def test_shipping_retry_budget_exhausted_creates_no_order(make_service, config):
    shipping = FlakyShipping(failures=100, exc=TimeoutError)
    service = make_service(shipping=shipping)
    with pytest.raises(ShippingUnavailable):
        quoted(service)
    assert shipping.calls == config.shipping_retry_max
    assert service.list_orders("session:a") == []


def test_destination_outside_brazil_is_refused_without_retry(make_service):
    shipping = ShippingStub()
    service = make_service(shipping=shipping)
    service.carts.add_item("session:a", "tee", "M", "black", 1)
    with pytest.raises(DestinationUnreachable) as exc:
        service.start_checkout("session:a", Destination(zip_code="10001", country="US"))
    assert str(exc.value) == "DESTINATION_UNREACHABLE"
    assert shipping.calls == 1


# ---- choose_payment_method ----
def test_worked_example_payment_clamps_installments(make_service, ledger):
    gateway = GatewayStub()
    service = make_service(gateway=gateway)
    order = quoted(service)

    result = service.choose_payment_method(order.id, PaymentMethod.CREDIT_CARD, 6, PAYER)

    assert result.status is OrderStatus.PAYMENT_PENDING
    assert result.total_cents == 21500
    assert result.plan.count == 4
    assert result.plan.installment_cents == 5375
    assert gateway.charges[0]["amount_cents"] == 21500
    assert gateway.charges[0]["installments"] == 4
    assert gateway.charges[0]["reference"] == f"{order.id}:1"
    assert ledger.available("TEE-M-BLK") == 3

    stored = service.orders.get(order.id)
    assert statuses(stored)[-2:] == [OrderStatus.RESERVED, OrderStatus.PAYMENT_PENDING]
    assert "requested 6x" in stored.last_reason
    assert stored.installments == 4
    assert stored.active_attempt.transaction_ref == result.transaction_ref


def test_disabled_payment_method_is_rejected(make_service, ledger):
    service = make_service()
    order = quoted(service)
    with pytest.raises(PaymentMethodDisabled):
        service.choose_payment_method(order.id, PaymentMethod.BOLETO)
    assert service.orders.get(order.id).status is OrderStatus.QUOTED
    assert ledger.available("TEE-M-BLK") == 5


def test_insufficient_stock_leaves_checkout_quoted(make_service, ledger):
    service = make_service()
    order = quoted(service, qty=2)
    ledger.reserve([("TEE-M-BLK", 4)])

    with pytest.raises(InsufficientStock) as exc:
        service.choose_payment_method(order.id, PaymentMethod.PIX)
    assert exc.value.available == 1
    stored = service.orders.get(order.id)
    assert stored.status is OrderStatus.QUOTED
    assert stored.reservation_id is None


def test_two_shoppers_racing_for_the_last_unit(make_service, ledger):
    service = make_service()
    orders = []
    for owner in ("session:a", "session:b"):
        service.carts.add_item(owner, "cap", None, "red", 1)
        orders.append(service.start_checkout(owner, SP))

    barrier = threading.Barrier(2)
    outcomes = {}

    def pay(order_id):
        barrier.wait()
        try:
            outcomes[order_id] = service.choose_payment_method(order_id, PaymentMethod.PIX).status.value
        except InsufficientStock as exc:
            outcomes[order_id] = str(exc)

    threads = [threading.Thread(target=pay, args=(o.id,)) for o in orders]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes.values()) == ["INSUFFICIENT_STOCK", "PAYMENT_PENDING"]
    assert ledger.available("CAP-U-RED") == 0


def test_gateway_error_after_retry_fails_payment_and_releases_stock(make_service, ledger):
    gateway = FlakyGateway(failures=100)
    service = make_service(gateway=gateway)
    order = quoted(service)

    with pytest.raises(GatewayError):
        service.choose_payment_method(order.id, PaymentMethod.PIX)

    assert gateway.calls == 2
    stored = service.orders.get(order.id)
    assert stored.status is OrderStatus.PAYMENT_FAILED
    assert stored.last_reason == "GATEWAY_ERROR"
    assert ledger.available("TEE-M-BLK") == 5


def test_gateway_error_recovered_by_retry(make_service):
    gateway = FlakyGateway(failures=1)
    service = make_service(gateway=gateway)
    order = quoted(service)
    result = service.choose_payment_method(order.id, PaymentMethod.PIX)
    assert result.status is OrderStatus.PAYMENT_PENDING
    assert gateway.calls == 2
    assert len(service.orders.get(order.id).attempts) == 1


def test_crash_during_charge_leaves_pending_order_with_stock_held(make_service, ledger):
    gateway = CrashingGateway()
    service = make_service(gateway=gateway)
    order = quoted(service)

    with pytest.raises(RuntimeError):
        service.choose_payment_method(order.id, PaymentMethod.PIX)

    stored = service.orders.get(order.id)
    assert stored.status is OrderStatus.PAYMENT_PENDING
    assert stored.reservation_id is not None
    assert stored.attempts == []
    assert statuses(stored)[-2:] == [OrderStatus.RESERVED, OrderStatus.PAYMENT_PENDING]
    assert ledger.available("TEE-M-BLK") == 3
    assert len(gateway.charges) == 1


def test_cancel_during_charge_keeps_attempt_superseded(make_service, ledger):
    gateway = CancelingGateway()
    service = make_service(gateway=gateway)
    gateway.service = service
    order = quoted(service)

    with pytest.raises(InvalidTransition):
        service.choose_payment_method(order.id, PaymentMethod.PIX)

    stored = service.orders.get(order.id)
    assert stored.status is OrderStatus.CANCELED
    assert [a.status for a in stored.attempts] == [PaymentStatus.SUPERSEDED]
    assert ledger.available("TEE-M-BLK") == 5

    ack = service.apply_confirmation(gateway.charges[0]["ref"], "CONFIRMED")
    assert ack.conflict
    assert service.orders.get(order.id).reconciliation_required is True


def test_payment_choice_only_once(make_service):
    service = make_service()
    order = quoted(service)
    service.choose_payment_method(order.id, PaymentMethod.PIX)
    with pytest.raises(InvalidTransition):
        service.choose_payment_method(order.id, PaymentMethod.PIX)


def test_quote_expiry_blocks_payment(make_service, clock, config):
    service = make_service()
    order = quoted(service)
    clock.advance(seconds=config.quote_ttl.total_seconds())

    with pytest.raises(InvalidTransition) as exc:
        service.choose_payment_method(order.id, PaymentMethod.PIX)
    assert str(exc.value) == "CHECKOUT_EXPIRED"
    assert service.orders.get(order.id).status is OrderStatus.EXPIRED


# ---- confirmation ----
def test_confirmed_payment_commits_stock_and_completes(make_service, ledger, notifier):
    service = make_service()
    order = quoted(service)
    result = service.choose_payment_method(order.id, PaymentMethod.PIX, payer=PAYER)

    ack = service.apply_confirmation(result.transaction_ref, "CONFIRMED")

    assert ack.applied and not ack.duplicate and not ack.conflict
    assert ack.status is OrderStatus.PAID
    stored = service.orders.get(order.id)
    assert stored.status is OrderStatus.COMPLETED
    assert statuses(stored) == [
        OrderStatus.INITIATED,
        OrderStatus.QUOTED,
        OrderStatus.RESERVED,
        OrderStatus.PAYMENT_PENDING,
        OrderStatus.PAID,
        OrderStatus.FULFILLING,
        OrderStatus.COMPLETED,
    ]
    assert stored.attempts[0].status is PaymentStatus.CONFIRMED
    assert ledger.on_hand("TEE-M-BLK") == 3
    assert service.carts.snapshot("session:a").is_empty
    assert len(notifier.sent) == 1
    assert "Total  R$ 215,00" in notifier.sent[0][1]


def test_duplicate_confirmation_is_applied_once(make_service, ledger, notifier):
    service = make_service()
    order = quoted(service)
    result = service.choose_payment_method(order.id, PaymentMethod.PIX)

    first = service.apply_confirmation(result.transaction_ref, "CONFIRMED")
    second = service.apply_confirmation(result.transaction_ref, "RECEIVED")

    assert first.applied
    assert second.duplicate and not second.applied
    assert ledger.on_hand("TEE-M-BLK") == 3
    assert len(notifier.sent) == 1
    assert statuses(service.orders.get(order.id)).count(OrderStatus.PAID) == 1


def test_pending_and_unknown_statuses_change_nothing(make_service):
    service = make_service()
    order = quoted(service)
    result = service.choose_payment_method(order.id, PaymentMethod.PIX)

    for raw in ("PENDING", "AWAITING_RISK_ANALYSIS", "SOMETHING_NEW"):
        ack = service.apply_confirmation(result.transaction_ref, raw)
        assert not ack.applied
    assert service.orders.get(order.id).status is OrderStatus.PAYMENT_PENDING


def test_unknown_transaction_is_acknowledged_without_effect(make_service):
    service = make_service()
    ack = service.apply_confirmation("pay_missing", "CONFIRMED")
    assert ack.order_id is None and not ack.applied


def test_payment_for_unrecorded_charge_is_a_conflict(make_service, ledger):
    orders = InMemoryOrderStore()
    gateway = CrashingGateway()
    service = make_service(orders=orders, gateway=gateway)
    order = quoted(service)
    with pytest.raises(RuntimeError):
        service.choose_payment_method(order.id, PaymentMethod.PIX)
    lost_ref = gateway.charges[0]["ref"]

    ack = service.apply_confirmation(lost_ref, "CONFIRMED", order_id=order.id)

    assert ack.applied and ack.conflict
    assert ack.status is OrderStatus.PAYMENT_PENDING
    stored = orders.get(order.id)
    assert stored.reconciliation_required is True
    assert [(c[0], c[1]) for c in orders.conflicts] == [(order.id, lost_ref)]

    again = service.apply_confirmation(lost_ref, "CONFIRMED", order_id=order.id)
    assert again.duplicate
    assert len(orders.conflicts) == 1


def test_failure_for_unrecorded_charge_changes_nothing(make_service):
    orders = InMemoryOrderStore()
    service = make_service(orders=orders)
    order = quoted(service)
    service.choose_payment_method(order.id, PaymentMethod.PIX)

    ack = service.apply_confirmation("pay_other", "DECLINED", order_id=order.id)

    assert not ack.applied and not ack.conflict
    assert orders.get(order.id).status is OrderStatus.PAYMENT_PENDING
    assert orders.conflicts == []


def test_decline_retries_with_new_charge_then_fails(make_service, ledger):
    gateway = GatewayStub()
    service = make_service(gateway=gateway)
    order = quoted(service)
    first = service.choose_payment_method(order.id, PaymentMethod.PIX)

    ack = service.apply_confirmation(first.transaction_ref, "DECLINED")
    assert ack.status is OrderStatus.PAYMENT_PENDING
    assert len(gateway.charges) == 2
    assert gateway.charges[1]["reference"] == f"{order.id}:2"
    retry_ref = gateway.charges[1]["ref"]
    assert ledger.available("TEE-M-BLK") == 3

    ack = service.apply_confirmation(retry_ref, "REFUSED")
    assert ack.status is OrderStatus.PAYMENT_FAILED
    stored = service.orders.get(order.id)
    assert [a.status for a in stored.attempts] == [PaymentStatus.FAILED, PaymentStatus.FAILED]
    assert ledger.available("TEE-M-BLK") == 5
    assert len(gateway.charges) == 2


def test_decline_then_paid_on_retry(make_service, ledger):
    gateway = GatewayStub()
    service = make_service(gateway=gateway)
    order = quoted(service)
    first = service.choose_payment_method(order.id, PaymentMethod.PIX)
    service.apply_confirmation(first.transaction_ref, "DECLINED")

    ack = service.apply_confirmation(gateway.charges[1]["ref"], "CONFIRMED")

    assert ack.status is OrderStatus.PAID
    assert service.orders.get(order.id).status is OrderStatus.COMPLETED
    assert ledger.on_hand("TEE-M-BLK") == 3


def test_paid_for_superseded_attempt_is_a_conflict(make_service):
    gateway = GatewayStub()
    service = make_service(gateway=gateway)
    order = quoted(service)
    first = service.choose_payment_method(order.id, PaymentMethod.PIX)
    service.apply_confirmation(first.transaction_ref, "DECLINED")

    ack = service.apply_confirmation(first.transaction_ref, "CONFIRMED")

    assert ack.conflict
    stored = service.orders.get(order.id)
    assert stored.status is OrderStatus.PAYMENT_PENDING
    assert stored.reconciliation_required is True


def test_late_payment_after_expiry_needs_reconciliation(make_service, ledger, clock, config):
    orders = InMemoryOrderStore()
    service = make_service(orders=orders)
    order = quoted(service)
    result = service.choose_payment_method(order.id, PaymentMethod.PIX)

    clock.advance(seconds=config.reservation_ttl.total_seconds() + 1)
    assert service.get_order_status(order.id).status is OrderStatus.EXPIRED
    assert ledger.available("TEE-M-BLK") == 5

    ack = service.apply_confirmation(result.transaction_ref, "CONFIRMED")

    assert ack.conflict and ack.status is OrderStatus.EXPIRED
    stored = orders.get(order.id)
    assert stored.status is OrderStatus.EXPIRED
    assert stored.reconciliation_required is True
    assert ledger.on_hand("TEE-M-BLK") == 5
    assert [c[1] for c in orders.conflicts] == [result.transaction_ref]


def test_confirmation_after_deadline_expires_lazily(make_service, clock, config):
    service = make_service()
    order = quoted(service)
    result = service.choose_payment_method(order.id, PaymentMethod.PIX)
    clock.advance(seconds=config.reservation_ttl.total_seconds())

    ack = service.apply_confirmation(result.transaction_ref, "CONFIRMED")

    assert ack.conflict
    assert service.orders.get(order.id).status is OrderStatus.EXPIRED


def test_poll_applies_gateway_status(make_service):
    gateway = GatewayStub()
    service = make_service(gateway=gateway)
    order = quoted(service)
    result = service.choose_payment_method(order.id, PaymentMethod.PIX)

    assert not service.poll_payment(order.id).applied
    gateway.statuses[result.transaction_ref] = "CONFIRMED"
    ack = service.poll_payment(order.id)

    assert ack.applied and ack.status is OrderStatus.PAID


# ---- cancel ----
def test_cancel_releases_stock_and_late_payment_conflicts(make_service, ledger):
    service = make_service()
    order = quoted(service)
    result = service.choose_payment_method(order.id, PaymentMethod.PIX)

    canceled = service.cancel(order.id)
    assert canceled.status is OrderStatus.CANCELED
    assert ledger.available("TEE-M-BLK") == 5
    assert service.cancel(order.id).status is OrderStatus.CANCELED

    ack = service.apply_confirmation(result.transaction_ref, "CONFIRMED")
    assert ack.conflict
    assert service.orders.get(order.id).reconciliation_required is True


def test_cancel_after_payment_is_rejected(make_service):
    service = make_service()
    order = quoted(service)
    result = service.choose_payment_method(order.id, PaymentMethod.PIX)
    service.apply_confirmation(result.transaction_ref, "CONFIRMED")

    with pytest.raises(CancellationRejected) as exc:
        service.cancel(order.id)
    assert str(exc.value) == "CANCEL_NOT_ALLOWED"


def test_cancel_failed_order_is_invalid(make_service):
    service = make_service(gateway=FlakyGateway(failures=100))
    order = quoted(service)
    with pytest.raises(GatewayError):
        service.choose_payment_method(order.id, PaymentMethod.PIX)
    with pytest.raises(InvalidTransition):
        service.cancel(order.id)


# ---- maintenance / fulfillment ----
def test_expire_stale_sweeps_open_orders(make_service, clock, config):
    service = make_service()
    a = quoted(service, owner="session:a", qty=1)
    b = quoted(service, owner="session:b", qty=1)
    service.choose_payment_method(b.id, PaymentMethod.PIX)

    clock.advance(seconds=config.quote_ttl.total_seconds())

    assert service.expire_stale() == 2
    assert service.orders.get(a.id).status is OrderStatus.EXPIRED
    assert service.orders.get(b.id).status is OrderStatus.EXPIRED
    assert service.expire_stale() == 0


def test_failed_fulfillment_is_recorded_and_resumed(make_service, notifier):
    notifier.fail = True
    service = make_service()
    order = quoted(service)
    result = service.choose_payment_method(order.id, PaymentMethod.PIX, payer=PAYER)
    service.apply_confirmation(result.transaction_ref, "CONFIRMED")

    stuck = service.orders.get(order.id)
    assert stuck.status is OrderStatus.FULFILLING
    assert stuck.last_reason == "fulfillment failed: smtp down"

    notifier.fail = False
    assert service.resume_fulfillment() == 1
    done = service.orders.get(order.id)
    assert done.status is OrderStatus.COMPLETED
    assert statuses(done)[-3:] == [OrderStatus.FULFILLING, OrderStatus.FULFILLING, OrderStatus.COMPLETED]
    assert len(notifier.sent) == 1
    assert service.resume_fulfillment() == 0


def test_retry_fulfillment_of_unpaid_order_is_invalid(make_service):
    service = make_service()
    order = quoted(service)
    with pytest.raises(InvalidTransition):
        service.retry_fulfillment(order.id)


def test_resume_fulfillment_picks_up_paid_orders(make_service):
    dispatcher = RecordingDispatcher()
    service = make_service(dispatcher=dispatcher)
    order = quoted(service)
    result = service.choose_payment_method(order.id, PaymentMethod.PIX)
    service.apply_confirmation(result.transaction_ref, "CONFIRMED")
    assert service.orders.get(order.id).status is OrderStatus.PAID
    assert len(dispatcher.submitted) == 1

    service.dispatcher = RecordingDispatcher()
    assert service.resume_fulfillment() == 1
    fn, args = service.dispatcher.submitted[0]
    fn(*args)
    assert service.orders.get(order.id).status is OrderStatus.COMPLETED
