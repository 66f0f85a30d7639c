from __future__ import annotations

import hashlib
import json
import os
from typing import Any

from flask import has_request_context, request

from escrowcourt.extensions import db
from escrowcourt.models import IdempotencyKey
from escrowcourt.utils import clock


def idempotency_enforced() -> bool:
    raw = (os.getenv("ENABLE_IDEMPOTENCY_ENFORCEMENT") or "").strip().lower()
    return raw in ("1", "true", "yes", "on")


def _canonical_json(payload: Any) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def _hash_request(*, scope: str, payload: Any) -> str:
    raw = f"{scope.strip()}|{_canonical_json(payload)}".encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


def get_idempotency_key() -> str | None:
    if not has_request_context():
        return None
    k = request.headers.get("Idempotency-Key") or request.headers.get("X-Idempotency-Key")
    if not k:
        return None
    return k.strip()[:128] or None


def lookup_response(actor_id: str | None, scope: str, payload: Any):
    """Returns None (no key), ("required", body, 400), ("conflict", body, 409),
    ("hit", body, status) for a replay, or ("miss", row, 0) for a fresh key."""
    k = get_idempotency_key()
    if not k:
        if idempotency_enforced():
            return (
                "required",
                {"ok": False, "error": f"Idempotency-Key header is required for {scope}", "code": "IdempotencyKeyRequired"},
                400,
            )
        return None

    req_hash = _hash_request(scope=scope, payload=payload)
    row = IdempotencyKey.query.filter_by(scope=scope, key=k).first()
    if row:
        if (row.request_hash or "") != req_hash:
            return (
                "conflict",
                {"ok": False, "error": "Idempotency-Key reused with a different payload", "code": "IdempotencyKeyReuse"},
                409,
            )
        if row.response_json:
            return ("hit", json.loads(row.response_json), int(row.status_code or 200))
        # First request with this key is still in flight.
        return (
            "conflict",
            {"ok": False, "error": "Request with this Idempotency-Key is in progress", "code": "IdempotencyKeyInFlight"},
            409,
        )

    row = IdempotencyKey(
        key=k,
        scope=scope,
        actor_id=actor_id,
        request_hash=req_hash,
        created_at=clock.utcnow(),
        updated_at=clock.utcnow(),
    )
    db.session.add(row)
    db.session.commit()
    return ("miss", row, 0)


def store_response(row: IdempotencyKey, response_json: Any, status_code: int) -> None:
    row.response_json = json.dumps(response_json, separators=(",", ":"), default=str)
    row.status_code = int(status_code or 200)
    row.updated_at = clock.utcnow()
    db.session.add(row)
    db.session.commit()


def release_key(row: IdempotencyKey) -> None:
    """Forget a key whose request failed so the client can retry with it."""
    db.session.delete(row)
    db.session.commit()


def run_idempotent(actor_id: str | None, scope: str, payload: Any, handler):
    """Run `handler() -> (body, status)` at most once per Idempotency-Key.

    Returns (body, status). A failed handler forgets the key so the client may retry.
    """
    found = lookup_response(actor_id, scope, payload)
    if found is not None and found[0] != "miss":
        return found[1], found[2]
    row = found[1] if found is not None else None
    try:
        body, status = handler()
    except Exception:
        if row is not None:
            db.session.rollback()
            release_key(row)
        raise
    if row is not None:
        store_response(row, body, status)
    return body, status
