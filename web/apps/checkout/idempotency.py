"""Idempotency utilities for checkout endpoints that create side effects.

A client may send ``Idempotency-Key`` with ``POST /api/checkout/`` and
``POST /api/checkout/<id>/payment/``. The first request with a key stores
a record; once the request finishes its response is saved on that record
so retries replay it instead of starting a second checkout or a second
charge. Keys are scoped by owner and endpoint, so two shoppers (or two
endpoints) never share a record.
"""

import hashlib
import json

from django.db import IntegrityError, transaction

from .domain import CheckoutError
from .models import IdempotencyKey


class IdempotencyConflict(CheckoutError):
    code = "IDEMPOTENCY_CONFLICT"


class IdempotencyInProgress(CheckoutError):
    code = "IDEMPOTENCY_IN_PROGRESS"


def _hash(payload: dict) -> str:
    """Compute a stable SHA-256 hash for a JSON-serializable payload."""
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


def scoped_key(owner_id: str, scope: str, key: str) -> str:
    return f"{owner_id}|{scope}|{key}"[:200]


@transaction.atomic
def get_or_create_idempotent(key: str, payload: dict):
    """Get-or-create an idempotency record for ``key``.

    Returns:
        tuple[bool, IdempotencyKey]: ``(existing, rec)``; ``existing`` is
        False when the record was created by this call and the caller must
        run the request and ``finalize`` it.

    Raises:
        IdempotencyConflict: The key was used before with another payload.
        IdempotencyInProgress: The first request with this key has not
            finished yet.
    """
    h = _hash(payload)

    try:
        # Nested savepoint: if IntegrityError occurs, only this block is rolled back.
        with transaction.atomic():
            rec = IdempotencyKey.objects.create(key=key, request_hash=h, response_status=0, response_body={})
            return False, rec
    except IntegrityError:
        rec = IdempotencyKey.objects.select_for_update().get(key=key)
        if rec.request_hash != h:
            raise IdempotencyConflict(key=key)
        if not rec.response_status:
            raise IdempotencyInProgress(key=key)
        return True, rec


def finalize(rec: IdempotencyKey, status_code: int, body: dict, order_id=None):
    """Persist the final response so retries can replay it."""
    rec.response_status = status_code
    rec.response_body = body
    if order_id is not None:
        rec.order_id = order_id
    rec.save(update_fields=["response_status", "response_body", "order_id"])


def discard(rec: IdempotencyKey):
    """Forget a record whose request crashed, so the client may retry."""
    IdempotencyKey.objects.filter(key=rec.key, response_status=0).delete()
