from __future__ import annotations

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable

from escrowcourt.extensions import db
from escrowcourt.models import DomainEvent
from escrowcourt.utils import clock
from escrowcourt.utils.observability import get_request_id


def _safe_value(value: Any):
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _safe_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_safe_value(v) for v in value]
    return str(value)


def _safe_json(data: Any) -> str:
    normalized = _safe_value(data if isinstance(data, dict) else {"value": data})
    return json.dumps(normalized, separators=(",", ":"), ensure_ascii=False)


def publish_event(
    event_type: str,
    *,
    actor_id: str | None = None,
    subject_type: str | None = None,
    subject_id: int | str | None = None,
    recipients: Iterable[str] | None = None,
    severity: str = "INFO",
    idempotency_key: str | None = None,
    metadata: dict | None = None,
) -> DomainEvent:
    """Stage a domain event in the current unit of work.

    The row commits or rolls back together with the transition it describes;
    delivery happens only after commit.
    """
    key = (idempotency_key or "").strip()[:180] or None
    if key:
        existing = DomainEvent.query.filter_by(idempotency_key=key).first()
        if existing:
            return existing
    unique_recipients = sorted({str(r) for r in (recipients or []) if r})
    event = DomainEvent(
        created_at=clock.utcnow(),
        event_type=(event_type or "unknown").strip()[:80],
        actor_id=str(actor_id)[:64] if actor_id is not None else None,
        subject_type=(subject_type or "").strip()[:40] or None,
        subject_id=str(subject_id)[:64] if subject_id is not None else None,
        recipients_json=json.dumps(unique_recipients),
        request_id=(get_request_id() or "")[:80] or None,
        idempotency_key=key,
        severity=(severity or "INFO").strip().upper()[:16] or "INFO",
        metadata_json=_safe_json(metadata or {}),
        delivery_status="queued" if unique_recipients else "skipped",
        attempts=0,
    )
    db.session.add(event)
    db.session.flush()
    return event
