"""Sandbox payment gateway built with FastAPI.

Stands in for the real gateway during development and end-to-end runs.
Charges are created PENDING; ``/charges/{ref}/confirm`` and
``/charges/{ref}/decline`` settle them by hand and deliver the
notification to the storefront webhook (``STOREFRONT_WEBHOOK_URL``) with
``httpx``, the way the real gateway calls back. Persistence is delegated
to the SQLAlchemy-backed repository in ``repo.ChargesRepo``.
"""

import logging
import os
import time
import uuid
from typing import Annotated, Literal, Optional

import httpx
from fastapi import FastAPI, Header, HTTPException, Request
from pydantic import BaseModel, Field, constr
from pythonjsonlogger import jsonlogger
from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError, OperationalError

from repo import CONFIRMED, DECLINED, ChargesRepo, IdempotencyKey, canonical_hash, engine, get_session

WEBHOOK_URL = os.getenv("STOREFRONT_WEBHOOK_URL", "http://web:8000/api/payments/notifications/")
WEBHOOK_TOKEN = os.getenv("PAYMENT_WEBHOOK_TOKEN", "")
WEBHOOK_TIMEOUT = float(os.getenv("WEBHOOK_TIMEOUT_SECS", "2.0"))

app = FastAPI(title="Payment Gateway Sandbox")

Currency = constr(pattern=r"^[A-Z]{3}$")


@app.on_event("startup")
def _startup_db():
    # wait for the database to accept connections
    deadline = time.time() + 30
    while True:
        try:
            with engine.connect() as conn:
                conn.execute(text("select 1"))
            break
        except OperationalError:
            if time.time() > deadline:
                raise
            time.sleep(1)


logger = logging.getLogger("payments")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)


class Payer(BaseModel):
    name: str = ""
    email: str = ""
    document: str = ""


class ChargeRequest(BaseModel):
    """Request body for charge creation.

    Attributes:
        amount_cents: Positive amount in minor currency units (cents).
        currency: Three-letter ISO currency code (e.g., BRL).
        method: Payment method.
        installments: Number of installments (credit card only above 1).
        external_reference: Merchant reference echoed back in notifications.
    """

    amount_cents: int = Field(gt=0)
    currency: Currency
    method: Literal["PIX", "CREDIT_CARD", "DEBIT_CARD", "BOLETO"]
    installments: int = Field(default=1, ge=1, le=12)
    payer: Payer = Payer()
    external_reference: str = Field(min_length=1, max_length=200)


class ChargeResponse(BaseModel):
    transaction_ref: str
    status: str
    external_reference: str
    amount_cents: int
    installments: int


def _out(charge) -> ChargeResponse:
    return ChargeResponse(
        transaction_ref=charge.transaction_ref,
        status=charge.status,
        external_reference=charge.external_reference,
        amount_cents=charge.amount_cents,
        installments=charge.installments,
    )


@app.get("/health")
def health():
    return {"ok": True}


@app.post("/charges", response_model=ChargeResponse, status_code=201)
def create_charge(
    req: ChargeRequest,
    idempotency_key: Annotated[Optional[str], Header(alias="Idempotency-Key")] = None,
):
    """Create a PENDING charge, at most once per ``Idempotency-Key``.

    A retry with the same key and payload returns the charge created the
    first time; the same key with another payload is a 409.
    """
    if req.installments > 1 and req.method != "CREDIT_CARD":
        raise HTTPException(status_code=422, detail="INSTALLMENTS_NOT_ALLOWED")

    payload_hash = canonical_hash(req.model_dump())
    repo = ChargesRepo()

    with get_session() as s:
        if idempotency_key:
            try:
                s.add(IdempotencyKey(key=idempotency_key, request_hash=payload_hash))
                s.commit()
            except IntegrityError:
                s.rollback()
                rec = s.execute(
                    select(IdempotencyKey).where(IdempotencyKey.key == idempotency_key).with_for_update()
                ).scalars().first()
                if not rec:
                    raise HTTPException(status_code=500, detail="IDEMPOTENCY_LOOKUP_ERROR")
                if rec.request_hash != payload_hash:
                    raise HTTPException(status_code=409, detail="IDEMPOTENCY_CONFLICT")
                if rec.transaction_ref:
                    return _out(repo.get(s, rec.transaction_ref))

        charge = repo.create(
            s,
            amount_cents=req.amount_cents,
            currency=req.currency,
            method=req.method,
            installments=req.installments,
            external_reference=req.external_reference,
            payer_email=req.payer.email,
        )
        if idempotency_key:
            rec = s.get(IdempotencyKey, idempotency_key)
            rec.transaction_ref = charge.transaction_ref
        s.commit()
        logger.info(
            "charge created",
            extra={"transaction_ref": charge.transaction_ref, "external_reference": req.external_reference},
        )
        return _out(charge)


@app.get("/charges/{transaction_ref}", response_model=ChargeResponse)
def get_charge(transaction_ref: str):
    with get_session() as s:
        charge = ChargesRepo().get(s, transaction_ref)
        if charge is None:
            raise HTTPException(status_code=404, detail="NOT_FOUND")
        return _out(charge)


def _notify(charge) -> bool:
    """Deliver the charge status to the storefront; False when delivery failed."""
    headers = {"X-Gateway-Token": WEBHOOK_TOKEN} if WEBHOOK_TOKEN else {}
    body = {
        "transaction_ref": charge.transaction_ref,
        "status": charge.status,
        "external_reference": charge.external_reference,
    }
    try:
        with httpx.Client(timeout=WEBHOOK_TIMEOUT) as client:
            resp = client.post(WEBHOOK_URL, json=body, headers=headers)
    except httpx.RequestError as exc:
        logger.warning("webhook delivery failed", extra={"transaction_ref": charge.transaction_ref, "error": str(exc)})
        return False
    logger.info("webhook delivered", extra={"transaction_ref": charge.transaction_ref, "status_code": resp.status_code})
    return resp.status_code == 200


def _settle(transaction_ref: str, status: str) -> dict:
    with get_session() as s:
        charge = ChargesRepo().set_status(s, transaction_ref, status)
        if charge is None:
            raise HTTPException(status_code=404, detail="NOT_FOUND")
        out = _out(charge)
        delivered = _notify(charge)
    return {**out.model_dump(), "delivered": delivered}


@app.post("/charges/{transaction_ref}/confirm")
def confirm_charge(transaction_ref: str):
    """Sandbox only: mark the charge paid and notify the storefront."""
    return _settle(transaction_ref, CONFIRMED)


@app.post("/charges/{transaction_ref}/decline")
def decline_charge(transaction_ref: str):
    """Sandbox only: mark the charge declined and notify the storefront."""
    return _settle(transaction_ref, DECLINED)


@app.post("/charges/{transaction_ref}/redeliver")
def redeliver(transaction_ref: str):
    """Sandbox only: send the current status again (duplicate delivery)."""
    with get_session() as s:
        charge = ChargesRepo().get(s, transaction_ref)
        if charge is None:
            raise HTTPException(status_code=404, detail="NOT_FOUND")
        return {**_out(charge).model_dump(), "delivered": _notify(charge)}


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    try:
        response = await call_next(request)
    finally:
        logger.info("request handled", extra={"request_id": rid, "path": request.url.path, "method": request.method})
    response.headers["X-Request-ID"] = rid
    return response
