"""HTTP adapter clients with circuit breakers and context headers.

This module implements the shipping and payment gateway ports over HTTP
using ``httpx``. It adds:

- Request correlation: propagates ``X-Request-ID`` from a ContextVar set by
    the gateway middleware.
- Circuit breaker per downstream service (shipping, payments) to avoid
    hammering unhealthy dependencies, with one HALF_OPEN trial call after a timeout.
- Error mapping: transport errors, 5xx and an open circuit become the
    domain errors ``ShippingUnavailable`` / ``GatewayError``.

Each call is a single attempt. The checkout orchestrator owns the retry
budget (``CheckoutConfig``), so retries are never multiplied across layers.
Charge creation sends ``Idempotency-Key`` (the per-attempt reference) so a
retried request never creates a second charge.
"""

import logging
import threading
import time
from typing import List, Optional

import httpx
from django.conf import settings
from django.utils.module_loading import import_string

from .domain import (
    Destination,
    DestinationUnreachable,
    GatewayError,
    Parcel,
    PayerInfo,
    PaymentGatewayPort,
    PaymentMethod,
    ShippingOption,
    ShippingPort,
    ShippingUnavailable,
)

REQUEST_ID_CTX = import_string("gateway.middleware.REQUEST_ID_CTX")

logger = logging.getLogger(__name__)


# ---------------- Circuit Breaker ---------------- #

class CircuitBreaker:
    """Shared by every call to one upstream (carrier or payment gateway).

    Opens after ``fail_threshold`` consecutive transport or 5xx failures
    and rejects calls for ``reset_timeout`` seconds. After that one trial
    call is let through; its failure reopens the circuit at once.
    Business refusals (402/409/422) count as successes.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = "CLOSED"  # CLOSED | OPEN | HALF_OPEN
        self._opened_at = 0.0
        self._trial_in_flight = False

    @property
    def state(self) -> str:
        """Current breaker state with time-based transition handling."""
        with self._lock:
            if self._state == "OPEN" and (time.monotonic() - self._opened_at) >= self.reset_timeout:
                self._state = "HALF_OPEN"
                self._trial_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Check and update state before a protected call.

        Raises:
            RuntimeError: If the circuit is OPEN or the HALF_OPEN trial call is busy.
        """
        with self._lock:
            st = self.state
            if st == "OPEN":
                raise RuntimeError("CIRCUIT_OPEN")
            if st == "HALF_OPEN":
                if self._trial_in_flight:
                    raise RuntimeError("CIRCUIT_HALF_OPEN_BUSY")
                self._trial_in_flight = True
            return st

    def on_success(self):
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._trial_in_flight = False

    def on_failure(self):
        with self._lock:
            self._failures += 1
            reopen = self._state == "HALF_OPEN"
            if (reopen or self._failures >= self.fail_threshold) and self._state != "OPEN":
                self._state = "OPEN"
                self._opened_at = time.monotonic()
                self._trial_in_flight = False
                logger.warning("circuit opened", extra={"circuit": self.name, "failures": self._failures})

    def on_finish(self):
        with self._lock:
            if self._state == "HALF_OPEN":
                self._trial_in_flight = False

    def reset(self):
        self.on_success()


# Per-service instances
_shipping_cb = CircuitBreaker(
    "shipping",
    getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
    getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
)
_payments_cb = CircuitBreaker(
    "payments",
    getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
    getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
)


# ---------------- Helpers ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    """Build base headers including X-Request-ID and any extras."""
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _is_server_error(resp: httpx.Response) -> bool:
    return 500 <= resp.status_code < 600


# ---------------- Shipping Adapter ---------------- #

class HttpShippingClient(ShippingPort):
    """HTTP client for the shipping quote service."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = base_url or settings.SHIPPING_BASE_URL
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS

    def quote(self, origin: str, destination: Destination, parcel: Parcel) -> List[ShippingOption]:
        """Ask the carrier for options.

        Business mappings:
        - 200 → list of options (``[]`` when the carrier offers none)
        - 422 → ``DestinationUnreachable``, not retried and not a
          circuit failure

        Raises:
            ShippingUnavailable: Also for transport errors, 5xx and an
                open circuit.
        """
        payload = {
            "origin_zip": origin,
            "destination": {
                "zip_code": destination.zip_code,
                "city": destination.city,
                "state": destination.state,
                "country": destination.country,
            },
            "parcel": {"weight_grams": parcel.weight_grams, "items": parcel.items},
        }
        try:
            state = _shipping_cb.before_call()
        except RuntimeError as exc:
            raise ShippingUnavailable(destination=destination.zip_code, circuit=str(exc))
        headers = _request_headers({"X-Circuit-State": state})

        try:
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.post(f"{self.base_url}/quote", json=payload, headers=headers)
            if resp.status_code == 200:
                _shipping_cb.on_success()
                return [
                    ShippingOption(method=o["method"], cost_cents=int(o["cost_cents"]), eta_days=int(o["eta_days"]))
                    for o in resp.json().get("options", [])
                ]
            if resp.status_code == 422:
                _shipping_cb.on_success()
                raise DestinationUnreachable(destination=destination.zip_code)
            if _is_server_error(resp):
                _shipping_cb.on_failure()
            raise ShippingUnavailable(destination=destination.zip_code, http_status=resp.status_code)
        except httpx.RequestError as exc:
            _shipping_cb.on_failure()
            raise ShippingUnavailable(destination=destination.zip_code, error=str(exc)) from exc
        finally:
            _shipping_cb.on_finish()


# ---------------- Payments Adapter ---------------- #

class HttpGatewayClient(PaymentGatewayPort):
    """HTTP client for the payment gateway."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None, currency: str = "BRL"):
        self.base_url = base_url or settings.PAYMENTS_BASE_URL
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS
        self.currency = currency

    def create_charge(
        self,
        amount_cents: int,
        method: PaymentMethod,
        installments: int,
        payer: PayerInfo,
        reference: str,
    ) -> str:
        """Create a charge and return the gateway's transaction reference.

        Business mappings:
        - 200/201 → ``transaction_ref`` from the body
        - 402/409/422 → ``GatewayError`` (refused), not a circuit failure

        Raises:
            GatewayError: Also for transport errors, 5xx and an open circuit.
        """
        payload = {
            "amount_cents": amount_cents,
            "currency": self.currency,
            "method": PaymentMethod(method).value,
            "installments": installments,
            "payer": {"name": payer.name, "email": payer.email, "document": payer.document},
            "external_reference": reference,
        }
        try:
            state = _payments_cb.before_call()
        except RuntimeError as exc:
            raise GatewayError(reference=reference, circuit=str(exc))
        headers = _request_headers({"Idempotency-Key": reference, "X-Circuit-State": state})

        try:
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.post(f"{self.base_url}/charges", json=payload, headers=headers)
            if resp.status_code in (200, 201):
                _payments_cb.on_success()
                ref = resp.json().get("transaction_ref")
                if not ref:
                    raise GatewayError(reference=reference, detail="missing transaction_ref")
                return ref
            if resp.status_code in (402, 409, 422):
                _payments_cb.on_success()
                raise GatewayError(reference=reference, http_status=resp.status_code)
            if _is_server_error(resp):
                _payments_cb.on_failure()
            raise GatewayError(reference=reference, http_status=resp.status_code)
        except httpx.RequestError as exc:
            _payments_cb.on_failure()
            raise GatewayError(reference=reference, error=str(exc)) from exc
        finally:
            _payments_cb.on_finish()

    def get_status(self, transaction_ref: str) -> str:
        """Return the raw charge status string reported by the gateway."""
        try:
            state = _payments_cb.before_call()
        except RuntimeError as exc:
            raise GatewayError(transaction_ref=transaction_ref, circuit=str(exc))
        headers = _request_headers({"X-Circuit-State": state})

        try:
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.get(f"{self.base_url}/charges/{transaction_ref}", headers=headers)
            if resp.status_code == 200:
                _payments_cb.on_success()
                return str(resp.json().get("status", ""))
            if _is_server_error(resp):
                _payments_cb.on_failure()
            raise GatewayError(transaction_ref=transaction_ref, http_status=resp.status_code)
        except httpx.RequestError as exc:
            _payments_cb.on_failure()
            raise GatewayError(transaction_ref=transaction_ref, error=str(exc)) from exc
        finally:
            _payments_cb.on_finish()
