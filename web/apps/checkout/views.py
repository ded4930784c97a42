"""HTTP views for the checkout app.

Views are kept small: they resolve the caller's owner id, validate the
request (via Pydantic), map it to domain objects, delegate to the shared
``CheckoutService`` from ``get_checkout_service()`` and translate domain
errors into HTTP responses with a ``{"detail": CODE}`` body.

Owner id: ``user:<pk>`` for authenticated requests, otherwise
``session:<X-Session-Id>``; requests with neither get 401.

Idempotency: ``POST /api/checkout/`` and ``POST /api/checkout/<id>/payment/``
accept an ``Idempotency-Key`` header. The first request runs and its
response is stored; retries with the same key and payload replay it with
``Idempotent-Replay: true``. Reusing a key with another payload returns
409 ``IDEMPOTENCY_CONFLICT``.
"""

import json
import logging

from django.conf import settings
from django.core.paginator import Paginator
from pydantic import BaseModel, ValidationError
from rest_framework import status
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from .domain import (
    CartInvalid,
    CheckoutError,
    Destination,
    InsufficientStock,
    OrderBusy,
    OrderNotFound,
    PayerInfo,
)
from .idempotency import discard, finalize, get_or_create_idempotent, scoped_key
from .providers import get_checkout_service
from .schemas import (
    CancelIn,
    CartItemIn,
    CartMergeIn,
    CartQuantityIn,
    ChoosePaymentIn,
    NotificationIn,
    OrderReadDTO,
    PaymentOut,
    StartCheckoutIn,
)

logger = logging.getLogger(__name__)

STATUS_BY_CODE = {
    "EMPTY_CART": 400,
    "INVALID_QUANTITY": 400,
    "LINE_NOT_FOUND": 404,
    "VARIANT_NOT_FOUND": 404,
    "NOT_FOUND": 404,
    "CART_INVALID": 422,
    "INSUFFICIENT_STOCK": 422,
    "PAYMENT_METHOD_DISABLED": 422,
    "DESTINATION_UNREACHABLE": 422,
    "INVALID_TRANSITION": 409,
    "CANCEL_NOT_ALLOWED": 409,
    "IDEMPOTENCY_CONFLICT": 409,
    "IDEMPOTENCY_IN_PROGRESS": 409,
    "CHECKOUT_EXPIRED": 410,
    "RESERVATION_EXPIRED": 410,
    "SHIPPING_UNAVAILABLE": 502,
    "GATEWAY_ERROR": 502,
    "ORDER_BUSY": 503,
}


class OwnerRequired(Exception):
    pass


def owner_id_for(request) -> str:
    user = getattr(request, "user", None)
    if user is not None and user.is_authenticated:
        return f"user:{user.pk}"
    sid = (request.headers.get("X-Session-Id") or "").strip()
    if sid:
        return f"session:{sid}"
    raise OwnerRequired()


def error_body(err: CheckoutError) -> dict:
    body = {"detail": err.code}
    if isinstance(err, CartInvalid):
        body["lines"] = [
            {"product_id": key[0], "size": key[1], "color": key[2], "reason": reason} for key, reason in err.lines
        ]
    elif isinstance(err, InsufficientStock):
        body.update(sku=err.sku, requested=err.requested, available=err.available)
    return body


def error_response(err: CheckoutError) -> Response:
    return Response(error_body(err), status=STATUS_BY_CODE.get(err.code, status.HTTP_400_BAD_REQUEST))


def validate(schema: type[BaseModel], data):
    """Validate ``data`` against ``schema``; return (dto, None) or (None, 400 response)."""
    try:
        return schema.model_validate(data), None
    except ValidationError as e:
        errors = json.loads(e.json(include_url=False))
        return None, Response({"detail": "VALIDATION_ERROR", "errors": errors}, status=status.HTTP_400_BAD_REQUEST)


def owned_order(service, order_id: str, owner_id: str):
    order = service.orders.get(str(order_id))
    if order.owner_id != owner_id:
        raise OrderNotFound(order_id=str(order_id))
    return order


def cart_body(cart) -> dict:
    return {
        "owner_id": cart.owner_id,
        "lines": [
            {
                "product_id": l.product_id,
                "size": l.size,
                "color": l.color,
                "quantity": l.quantity,
                "price_snapshot_cents": l.price_snapshot_cents,
            }
            for l in cart.lines
        ],
        "items_count": sum(l.quantity for l in cart.lines),
    }


class OwnerAPIView(APIView):
    """Base view that resolves the owner id before dispatching."""

    throttle_classes = [ScopedRateThrottle]

    def initial(self, request, *args, **kwargs):
        super().initial(request, *args, **kwargs)
        try:
            self.owner_id = owner_id_for(request)
        except OwnerRequired:
            self.owner_id = None

    def handle_owner_missing(self):
        return Response({"detail": "OWNER_REQUIRED"}, status=status.HTTP_401_UNAUTHORIZED)

    def run_idempotent(self, request, scope: str, action):
        """Run ``action()`` (returning ``(status, body, order_id)``) at most once per key."""
        idem_key = request.headers.get("Idempotency-Key")
        rec = None
        if idem_key:
            try:
                existing, rec = get_or_create_idempotent(
                    scoped_key(self.owner_id, scope, idem_key), {"scope": scope, "body": request.data}
                )
            except CheckoutError as e:
                return error_response(e)
            if existing:
                resp = Response(rec.response_body, status=rec.response_status or status.HTTP_200_OK)
                resp["Idempotent-Replay"] = "true"
                return resp

        try:
            status_code, body, order_id = action()
        except CheckoutError as e:
            status_code, body, order_id = STATUS_BY_CODE.get(e.code, 400), error_body(e), None
        except Exception:
            logger.exception("checkout request failed", extra={"scope": scope, "owner_id": self.owner_id})
            if rec:
                discard(rec)
            return Response({"detail": "UPSTREAM_UNAVAILABLE"}, status=status.HTTP_503_SERVICE_UNAVAILABLE)

        if rec:
            finalize(rec, status_code, body, order_id=order_id)
        return Response(body, status=status_code)


# ---- cart ----
class CartView(OwnerAPIView):
    throttle_scope = "cart"

    def get(self, request):
        if self.owner_id is None:
            return self.handle_owner_missing()
        cart = get_checkout_service().carts.snapshot(self.owner_id)
        return Response(cart_body(cart))


class CartItemsView(OwnerAPIView):
    throttle_scope = "cart"

    def post(self, request):
        if self.owner_id is None:
            return self.handle_owner_missing()
        dto, bad = validate(CartItemIn, request.data)
        if bad:
            return bad
        cart = get_checkout_service().carts.add_item(
            self.owner_id, dto.product_id, dto.size, dto.color, dto.quantity, dto.price_snapshot_cents
        )
        return Response(cart_body(cart), status=status.HTTP_201_CREATED)

    def patch(self, request):
        if self.owner_id is None:
            return self.handle_owner_missing()
        dto, bad = validate(CartQuantityIn, request.data)
        if bad:
            return bad
        try:
            cart = get_checkout_service().carts.update_quantity(
                self.owner_id, (dto.product_id, dto.size, dto.color), dto.quantity
            )
        except CheckoutError as e:
            return error_response(e)
        return Response(cart_body(cart))

    def delete(self, request):
        if self.owner_id is None:
            return self.handle_owner_missing()
        product_id = request.query_params.get("product_id")
        if not product_id:
            return Response({"detail": "VALIDATION_ERROR"}, status=status.HTTP_400_BAD_REQUEST)
        key = (product_id, request.query_params.get("size") or None, request.query_params.get("color") or None)
        cart = get_checkout_service().carts.remove_item(self.owner_id, key)
        return Response(cart_body(cart))


class CartMergeView(OwnerAPIView):
    """Fold the anonymous session cart into the logged-in account's cart."""

    throttle_scope = "cart"

    def post(self, request):
        if not request.user.is_authenticated:
            return Response({"detail": "LOGIN_REQUIRED"}, status=status.HTTP_401_UNAUTHORIZED)
        dto, bad = validate(CartMergeIn, request.data)
        if bad:
            return bad
        cart = get_checkout_service().carts.merge(f"session:{dto.session_id}", self.owner_id)
        return Response(cart_body(cart))


# ---- checkout ----
class CheckoutCollectionView(OwnerAPIView):
    """Start a checkout from the caller's cart.

    Returns:
        - 201 with the quoted order.
        - 400 EMPTY_CART / VALIDATION_ERROR.
        - 422 CART_INVALID with the offending lines.
        - 422 DESTINATION_UNREACHABLE when the carrier refuses the destination.
        - 502 SHIPPING_UNAVAILABLE when no quote could be obtained.
    """

    throttle_scope = "checkout"

    def post(self, request):
        if self.owner_id is None:
            return self.handle_owner_missing()
        dto, bad = validate(StartCheckoutIn, request.data)
        if bad:
            return bad

        def action():
            service = get_checkout_service()
            d = dto.destination
            order = service.start_checkout(
                self.owner_id,
                Destination(zip_code=d.zip_code, city=d.city, state=d.state, country=d.country),
                dto.shipping_method,
            )
            body = OrderReadDTO.from_order(order).model_dump(mode="json")
            return status.HTTP_201_CREATED, body, order.id

        return self.run_idempotent(request, "checkout", action)


class CheckoutPaymentView(OwnerAPIView):
    """Choose the payment method: reserve stock and create the charge.

    Returns:
        - 201 with the transaction reference and the applied installment plan.
        - 409 INVALID_TRANSITION when the checkout is not awaiting payment.
        - 410 CHECKOUT_EXPIRED once the quote has expired.
        - 422 INSUFFICIENT_STOCK / PAYMENT_METHOD_DISABLED.
        - 502 GATEWAY_ERROR; the order is then PAYMENT_FAILED.
    """

    throttle_scope = "checkout"

    def post(self, request, oid):
        if self.owner_id is None:
            return self.handle_owner_missing()
        dto, bad = validate(ChoosePaymentIn, request.data)
        if bad:
            return bad

        def action():
            service = get_checkout_service()
            owned_order(service, oid, self.owner_id)
            payer = PayerInfo(name=dto.payer.name, email=dto.payer.email, document=dto.payer.document) if dto.payer else None
            result = service.choose_payment_method(str(oid), dto.method, dto.installments, payer)
            return status.HTTP_201_CREATED, PaymentOut.from_result(result).model_dump(mode="json"), result.order_id

        return self.run_idempotent(request, f"payment:{oid}", action)


class CheckoutCancelView(OwnerAPIView):
    throttle_scope = "checkout"

    def post(self, request, oid):
        if self.owner_id is None:
            return self.handle_owner_missing()
        dto, bad = validate(CancelIn, request.data or {})
        if bad:
            return bad
        service = get_checkout_service()
        try:
            owned_order(service, oid, self.owner_id)
            order = service.cancel(str(oid), dto.reason)
        except CheckoutError as e:
            return error_response(e)
        return Response(OrderReadDTO.from_order(order).model_dump(mode="json"))


# ---- orders ----
class OrdersCollectionView(OwnerAPIView):
    throttle_scope = "orders_list"

    def get(self, request):
        if self.owner_id is None:
            return self.handle_owner_missing()
        orders = get_checkout_service().list_orders(self.owner_id)
        try:
            page = int(request.GET.get("page", 1))
            page_size = min(int(request.GET.get("page_size", 20)), 100)
        except ValueError:
            return Response({"detail": "VALIDATION_ERROR"}, status=status.HTTP_400_BAD_REQUEST)
        p = Paginator(orders, max(page_size, 1))
        page_obj = p.get_page(page)

        results = [OrderReadDTO.from_order(o, with_history=False).model_dump(mode="json") for o in page_obj.object_list]
        return Response(
            {
                "count": p.count,
                "page": page_obj.number,
                "page_size": page_size,
                "results": results,
            },
            status=200,
        )


class OrderDetailView(OwnerAPIView):
    """Current status of an order, expiring it first when its deadline passed."""

    throttle_scope = "orders_detail"

    def get(self, request, oid):
        if self.owner_id is None:
            return self.handle_owner_missing()
        service = get_checkout_service()
        try:
            owned_order(service, oid, self.owner_id)
            order = service.get_order_status(str(oid))
        except CheckoutError as e:
            return error_response(e)
        return Response(OrderReadDTO.from_order(order).model_dump(mode="json"), status=200)


class OrderPollView(OwnerAPIView):
    """Ask the gateway for the active attempt's status and apply it."""

    throttle_scope = "orders_detail"

    def post(self, request, oid):
        if self.owner_id is None:
            return self.handle_owner_missing()
        service = get_checkout_service()
        try:
            owned_order(service, oid, self.owner_id)
            service.poll_payment(str(oid))
            order = service.get_order_status(str(oid))
        except CheckoutError as e:
            return error_response(e)
        return Response(OrderReadDTO.from_order(order).model_dump(mode="json"), status=200)


# ---- gateway webhook ----
class PaymentNotificationView(APIView):
    """Inbound gateway notification.

    Always acknowledged with 200 so the gateway stops re-delivering,
    except when the order is locked by another request (503: the gateway
    retries later). Duplicates and unknown references are acknowledged
    without effect.
    """

    authentication_classes = []
    permission_classes = [AllowAny]
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "payments_webhook"

    def post(self, request):
        token = getattr(settings, "PAYMENT_WEBHOOK_TOKEN", "")
        if token and request.headers.get("X-Gateway-Token") != token:
            return Response({"detail": "UNAUTHORIZED"}, status=status.HTTP_401_UNAUTHORIZED)

        try:
            dto = NotificationIn.model_validate(request.data)
        except ValidationError:
            logger.warning("malformed payment notification")
            return Response({"received": True, "applied": False, "detail": "INVALID_PAYLOAD"}, status=200)

        try:
            ack = get_checkout_service().apply_confirmation(dto.transaction_ref, dto.status, order_id=dto.order_id)
        except OrderBusy:
            return Response({"detail": "ORDER_BUSY"}, status=status.HTTP_503_SERVICE_UNAVAILABLE)
        except CheckoutError as e:
            logger.warning(
                "payment notification not applied",
                extra={"transaction_ref": dto.transaction_ref, "code": e.code},
            )
            return Response({"received": True, "applied": False, "detail": e.code}, status=200)

        return Response(
            {
                "received": True,
                "order_id": ack.order_id,
                "applied": ack.applied,
                "duplicate": ack.duplicate,
                "conflict": ack.conflict,
                "status": ack.status.value if ack.status else None,
            },
            status=200,
        )
