"""Pydantic schemas for the checkout API.

Request schemas validate and normalize incoming payloads before they are
mapped to domain objects; response schemas shape what the views return.
"""

import re
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from .domain import Order, PaymentMethod, PaymentResult

ZIP_RE = re.compile(r"^\d{5}-?\d{3}$")
MAX_LINE_QUANTITY = 99


def _normalize_option(v: Optional[str]) -> Optional[str]:
    if v is None:
        return None
    v = v.strip()
    return v or None


class CartItemIn(BaseModel):
    """Input schema for adding a line to the cart.

    Attributes:
        product_id: Catalog product identifier.
        size: Optional size; blank strings are treated as absent.
        color: Optional color; blank strings are treated as absent.
        quantity: Units to add (1-99).
        price_snapshot_cents: Price the client displayed, informational only.
    """

    product_id: str = Field(min_length=1, max_length=64)
    size: Optional[str] = Field(default=None, max_length=32)
    color: Optional[str] = Field(default=None, max_length=32)
    quantity: int = Field(default=1, gt=0, le=MAX_LINE_QUANTITY)
    price_snapshot_cents: Optional[int] = Field(default=None, ge=0)

    @field_validator("size", "color")
    @classmethod
    def blank_is_none(cls, v: Optional[str]) -> Optional[str]:
        return _normalize_option(v)


class CartQuantityIn(BaseModel):
    product_id: str = Field(min_length=1, max_length=64)
    size: Optional[str] = Field(default=None, max_length=32)
    color: Optional[str] = Field(default=None, max_length=32)
    quantity: int = Field(ge=0, le=MAX_LINE_QUANTITY)

    @field_validator("size", "color")
    @classmethod
    def blank_is_none(cls, v: Optional[str]) -> Optional[str]:
        return _normalize_option(v)


class CartMergeIn(BaseModel):
    session_id: str = Field(min_length=1, max_length=100)


class DestinationIn(BaseModel):
    zip_code: str
    city: str = Field(default="", max_length=100)
    state: str = Field(default="", max_length=2)
    country: str = Field(default="BR", min_length=2, max_length=2)

    @field_validator("zip_code")
    @classmethod
    def validate_zip(cls, v: str) -> str:
        """Accept ``01001000`` or ``01001-000``; normalize to the dashed form."""
        v = v.strip()
        if not ZIP_RE.match(v):
            raise ValueError("Invalid zip code")
        digits = v.replace("-", "")
        return f"{digits[:5]}-{digits[5:]}"

    @field_validator("country", "state")
    @classmethod
    def upper(cls, v: str) -> str:
        return v.upper()


class StartCheckoutIn(BaseModel):
    destination: DestinationIn
    shipping_method: Optional[str] = Field(default=None, max_length=64)


class PayerIn(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    email: str = Field(default="", max_length=254)
    document: str = Field(default="", max_length=32)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        v = v.strip()
        if v and "@" not in v:
            raise ValueError("Invalid email")
        return v


class ChoosePaymentIn(BaseModel):
    """Payment choice for a quoted checkout.

    ``installments`` is only a request: the store clamps it to its limits
    and reports the applied count in the response.
    """

    method: PaymentMethod
    installments: int = Field(default=1, ge=1, le=24)
    payer: Optional[PayerIn] = None

    @field_validator("method", mode="before")
    @classmethod
    def upper_method(cls, v):
        return v.upper() if isinstance(v, str) else v


class CancelIn(BaseModel):
    reason: str = Field(default="canceled by customer", max_length=200)


class NotificationIn(BaseModel):
    """Inbound gateway notification."""

    transaction_ref: str = Field(min_length=1, max_length=128)
    status: str = Field(min_length=1, max_length=64)
    external_reference: Optional[str] = Field(default=None, max_length=200)

    @property
    def order_id(self) -> Optional[str]:
        # external_reference is "<order id>:<attempt number>"
        if not self.external_reference:
            return None
        return self.external_reference.split(":", 1)[0]


# ---- responses ----
class OrderLineOut(BaseModel):
    sku: str
    product_id: str
    size: Optional[str] = None
    color: Optional[str] = None
    name: str = ""
    quantity: int
    unit_price_cents: int
    total_cents: int


class StatusEntryOut(BaseModel):
    status: str
    reason: str
    at: datetime


class OrderReadDTO(BaseModel):
    id: str
    status: str
    terminal: bool
    retryable: bool
    reason: str
    currency: str
    subtotal_cents: int
    shipping_method: str
    shipping_cents: int
    shipping_eta_days: int
    total_cents: int
    payment_method: Optional[str] = None
    installments: int
    transaction_ref: Optional[str] = None
    expires_at: Optional[datetime] = None
    reconciliation_required: bool
    created_at: Optional[datetime] = None
    lines: list[OrderLineOut] = []
    history: list[StatusEntryOut] = []

    @classmethod
    def from_order(cls, order: Order, with_history: bool = True) -> "OrderReadDTO":
        latest = order.attempts[-1].transaction_ref if order.attempts else None
        return cls(
            id=order.id,
            status=order.status.value,
            terminal=order.status.terminal,
            retryable=not order.status.terminal,
            reason=order.last_reason,
            currency=order.currency,
            subtotal_cents=order.subtotal_cents,
            shipping_method=order.shipping.method,
            shipping_cents=order.shipping.cost_cents,
            shipping_eta_days=order.shipping.eta_days,
            total_cents=order.total_cents,
            payment_method=order.payment_method.value if order.payment_method else None,
            installments=order.installments,
            transaction_ref=latest,
            expires_at=order.expires_at if order.status.pre_payment else None,
            reconciliation_required=order.reconciliation_required,
            created_at=order.created_at,
            lines=[
                OrderLineOut(
                    sku=l.sku,
                    product_id=l.product_id,
                    size=l.size,
                    color=l.color,
                    name=l.name,
                    quantity=l.quantity,
                    unit_price_cents=l.unit_price_cents,
                    total_cents=l.total_cents,
                )
                for l in order.lines
            ],
            history=(
                [StatusEntryOut(status=h.status.value, reason=h.reason, at=h.at) for h in order.history]
                if with_history
                else []
            ),
        )


class PaymentOut(BaseModel):
    order_id: str
    status: str
    transaction_ref: str
    total_cents: int
    installments: int
    installment_cents: int
    installments_requested: int
    installments_adjusted: bool

    @classmethod
    def from_result(cls, result: PaymentResult) -> "PaymentOut":
        return cls(
            order_id=result.order_id,
            status=result.status.value,
            transaction_ref=result.transaction_ref,
            total_cents=result.total_cents,
            installments=result.plan.count,
            installment_cents=result.plan.installment_cents,
            installments_requested=result.plan.requested,
            installments_adjusted=result.plan.adjusted,
        )
