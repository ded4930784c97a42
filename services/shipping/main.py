"""Shipping quote service built with FastAPI.

Quotes delivery options for a parcel sent from the store's origin zip
code to a Brazilian destination. Validation is performed with Pydantic
models; rates come from the SQLAlchemy-backed ``repo.RatesRepo``.
"""

import logging
import time
import uuid
from typing import List

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field, constr
from pythonjsonlogger import jsonlogger
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from repo import RatesRepo, engine, init_db

app = FastAPI(title="Shipping Service")

ZipCode = constr(pattern=r"^\d{5}-?\d{3}$")

logger = logging.getLogger("shipping")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)


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
    init_db()


class Destination(BaseModel):
    zip_code: ZipCode
    city: str = ""
    state: str = ""
    country: str = Field(default="BR", min_length=2, max_length=2)


class Parcel(BaseModel):
    """Parcel to ship.

    Attributes:
        weight_grams: Total weight; at least one gram.
        items: Number of units packed.
    """

    weight_grams: int = Field(gt=0)
    items: int = Field(gt=0)


class QuoteRequest(BaseModel):
    origin_zip: ZipCode
    destination: Destination
    parcel: Parcel


class Option(BaseModel):
    method: str
    cost_cents: int
    eta_days: int


class QuoteResponse(BaseModel):
    options: List[Option]


@app.get("/health")
def health():
    return {"ok": True}


@app.post("/quote", response_model=QuoteResponse)
def quote(req: QuoteRequest):
    """Return the delivery options for the parcel.

    Raises:
        HTTPException: 422 ``DESTINATION_UNREACHABLE`` outside Brazil or
            when no rate covers the destination zip code.
    """
    if req.destination.country.upper() != "BR":
        raise HTTPException(status_code=422, detail="DESTINATION_UNREACHABLE")

    options = RatesRepo().quote(req.destination.zip_code, req.parcel.weight_grams)
    if not options:
        raise HTTPException(status_code=422, detail="DESTINATION_UNREACHABLE")
    return QuoteResponse(options=[Option(**o) for o in options])


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
