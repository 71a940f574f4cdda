"""Idempotency utilities for checkout retries.

A mobile client that lost the response to a checkout retries with the same
``Idempotency-Key``. The first request stores a record keyed by the caller
and the key; once the checkout finishes its response is stored on the
record and every retry with the same payload replays it instead of holding
stock and authorizing a second payment.
"""

import hashlib
import json

from django.db import IntegrityError, transaction

from .models import IdempotencyKey

IN_PROGRESS = 0


def _hash(payload: dict) -> str:
    """Compute a stable SHA-256 hash for a JSON-serializable payload.

    The payload is serialized with sorted keys and compact separators to
    ensure a deterministic representation before hashing.
    """
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


def scoped_key(user_id: str, key: str) -> str:
    """Namespace a client key by user so two customers never share a record."""
    return f"{user_id}:{key}"


@transaction.atomic
def get_or_create_idempotent(key: str, payload: dict):
    """Get-or-create an idempotency record for the given key and payload.

    Returns:
        tuple[bool, IdempotencyKey]: ``(existing, rec)``; ``existing`` is
        False when the record was created by this call and the caller must
        run the request and ``finalize`` it.

    Raises:
        ValueError: ``IDEMPOTENCY_CONFLICT`` when the key was used with a
            different payload, ``IDEMPOTENCY_IN_PROGRESS`` when the first
            request with this key has not finished yet.
    """
    h = _hash(payload)

    try:
        # Nested savepoint: if IntegrityError occurs, only this block is rolled back.
        with transaction.atomic():
            rec = IdempotencyKey.objects.create(
                key=key, request_hash=h, response_status=IN_PROGRESS, response_body={}
            )
            return False, rec
    except IntegrityError:
        rec = IdempotencyKey.objects.select_for_update().get(key=key)
        if rec.request_hash != h:
            raise ValueError("IDEMPOTENCY_CONFLICT")
        if rec.response_status == IN_PROGRESS:
            raise ValueError("IDEMPOTENCY_IN_PROGRESS")
        return True, rec


def finalize(rec: IdempotencyKey, status_code: int, body: dict, order_id=None):
    """Persist the final response so retries can short-circuit."""
    rec.response_status = status_code
    rec.response_body = body
    if order_id is not None:
        rec.order_id = order_id
    rec.save(update_fields=["response_status", "response_body", "order_id"])


def discard(rec: IdempotencyKey):
    """Forget a record whose request failed transiently, so the client can retry."""
    IdempotencyKey.objects.filter(key=rec.key, response_status=IN_PROGRESS).delete()
