from __future__ import annotations

import logging

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from escrowcourt.extensions import db
from escrowcourt.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from escrowcourt.integrations.notifications.factory import build_notification_dispatcher
from escrowcourt.models import DomainEvent
from escrowcourt.utils import clock

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 6


class DispatchMode:
    OUTBOX = "outbox"
    QUEUE = "queue"
    INLINE = "inline"

    ALL = (OUTBOX, QUEUE, INLINE)


def _mode() -> str:
    mode = (current_app.config.get("EVENT_DISPATCH_MODE") or DispatchMode.OUTBOX).strip().lower()
    return mode if mode in DispatchMode.ALL else DispatchMode.OUTBOX


def deliver_event(event_id: int) -> dict:
    """Push one outbox row to every recipient.

    Runs after the business transaction has committed; whatever happens here
    only touches the outbox row itself.
    """
    event = db.session.get(DomainEvent, int(event_id))
    if event is None:
        return {"ok": False, "event_id": int(event_id), "error": "not_found"}
    if event.delivery_status in ("sent", "skipped"):
        return {"ok": True, "event_id": int(event.id), "status": event.delivery_status}

    try:
        dispatcher = build_notification_dispatcher(current_app.config)
    except IntegrationDisabledError:
        event.delivery_status = "skipped"
        event.last_error = "notifications disabled"
        db.session.commit()
        return {"ok": True, "event_id": int(event.id), "status": "skipped"}
    except IntegrationMisconfiguredError as e:
        event.attempts = int(event.attempts or 0) + 1
        event.delivery_status = "failed"
        event.last_error = str(e)[:500]
        db.session.commit()
        logger.warning("notify_misconfigured event_id=%s err=%s", event.id, e)
        return {"ok": False, "event_id": int(event.id), "status": "failed", "error": str(e)}

    payload = event.to_dict()
    failures = []
    for user_id in event.recipients():
        result = dispatcher.notify(user_id=user_id, event=payload)
        if not result.ok:
            failures.append(f"{user_id}:{result.code}:{result.message}")

    event.attempts = int(event.attempts or 0) + 1
    if failures:
        event.delivery_status = "failed"
        event.last_error = "; ".join(failures)[:500]
        logger.warning(
            "notify_failed event_id=%s type=%s attempts=%s err=%s",
            event.id,
            event.event_type,
            event.attempts,
            event.last_error,
        )
    else:
        event.delivery_status = "sent"
        event.last_error = None
        event.dispatched_at = clock.utcnow()
    db.session.commit()
    return {
        "ok": not failures,
        "event_id": int(event.id),
        "status": event.delivery_status,
        "attempts": int(event.attempts),
    }


def dispatch_committed(event_ids: list[int]) -> None:
    """Hand freshly committed events to the configured delivery path.

    Never raises: a failed side effect must not surface as a failed transition.
    """
    if not event_ids:
        return
    mode = _mode()
    if mode == DispatchMode.OUTBOX:
        return
    for event_id in event_ids:
        try:
            if mode == DispatchMode.QUEUE:
                from escrowcourt.tasks.settlement_tasks import deliver_domain_event

                deliver_domain_event.delay(event_id=int(event_id))
            else:
                deliver_event(int(event_id))
        except Exception as e:
            db.session.rollback()
            logger.warning("event_dispatch_failed event_id=%s mode=%s err=%s", event_id, mode, e)


def flush_outbox(*, limit: int = 200) -> dict:
    """Retry queued and failed events that still have attempts left."""
    try:
        rows = (
            db.session.query(DomainEvent.id)
            .filter(
                DomainEvent.delivery_status.in_(("queued", "failed")),
                DomainEvent.attempts < MAX_ATTEMPTS,
            )
            .order_by(DomainEvent.id.asc())
            .limit(int(limit))
            .all()
        )
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.warning("outbox_scan_failed err=%s", e)
        return {"ok": False, "scanned": 0, "sent": 0, "failed": 0}
    sent = 0
    failed = 0
    for (event_id,) in rows:
        try:
            result = deliver_event(int(event_id))
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.warning("outbox_delivery_error event_id=%s err=%s", event_id, e)
            failed += 1
            continue
        if result.get("ok"):
            sent += 1
        else:
            failed += 1
    return {"ok": failed == 0, "scanned": len(rows), "sent": sent, "failed": failed}
