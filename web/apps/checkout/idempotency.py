"""Idempotent replay of checkout requests keyed by ``Idempotency-Key``.

The first request with a key claims a record; once the checkout finishes its
status and body are stored on it. Retries with the same key and the same
payload get the stored response back without running the checkout again.
Reusing a key with a different payload is a conflict.
"""

import hashlib
import json

from django.core.serializers.json import DjangoJSONEncoder
from django.db import IntegrityError, transaction

from .models import IdempotencyKey


class IdempotencyConflict(ValueError):
    """The key was already used with a different payload."""


def request_hash(payload) -> str:
    """Stable SHA-256 of a JSON-serializable payload (sorted keys, compact)."""
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), cls=DjangoJSONEncoder)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


@transaction.atomic
def get_or_create_idempotent(key: str, payload) -> tuple[bool, IdempotencyKey]:
    """Claim ``key`` for this payload, or return the existing record.

    The create runs in a nested savepoint so a duplicate key only rolls back
    that block; the existing row is then read under ``SELECT ... FOR UPDATE``.

    Args:
        key: Client-provided idempotency key.
        payload: Request body.

    Returns:
        tuple[bool, IdempotencyKey]: ``(existing, record)``. ``existing`` is
        False when this call created the record and must finalize it.

    Raises:
        IdempotencyConflict: The key exists with a different payload hash.
    """
    h = request_hash(payload)
    try:
        with transaction.atomic():
            rec = IdempotencyKey.objects.create(key=key, request_hash=h, response_status=0, response_body={})
            return False, rec
    except IntegrityError:
        rec = IdempotencyKey.objects.select_for_update().get(key=key)
        if rec.request_hash != h:
            raise IdempotencyConflict("IDEMPOTENCY_CONFLICT")
        return True, rec


def is_in_flight(rec: IdempotencyKey) -> bool:
    # 0 = la primera petición todavía no terminó
    return rec.response_status == 0


def finalize(rec: IdempotencyKey, status_code: int, body: dict, order_id=None):
    """Store the final response so retries can short-circuit."""
    rec.response_status = status_code
    rec.response_body = body
    if order_id is not None:
        rec.order_id = order_id
    rec.save(update_fields=["response_status", "response_body", "order"])
