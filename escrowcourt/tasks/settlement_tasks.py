from __future__ import annotations

import json
import time
from datetime import datetime

from celery import shared_task
from flask import current_app

from escrowcourt.extensions import db
from escrowcourt.integrations.filestore import probe_reference
from escrowcourt.jobs.escrow_runner import run_escrow_expiry_sweep, run_outbox_flush
from escrowcourt.models import DisputeEvidence
from escrowcourt.services.notification_service import MAX_ATTEMPTS, deliver_event


def _task_log(task_name: str, *, status: str, started_at: float, trace_id: str = "", **extra):
    duration_ms = int(max(0.0, (time.perf_counter() - float(started_at))) * 1000.0)
    payload = {
        "task_name": task_name,
        "status": status,
        "duration_ms": duration_ms,
        "trace_id": str(trace_id or ""),
        "timestamp": datetime.utcnow().isoformat(),
    }
    payload.update(extra or {})
    current_app.logger.info(json.dumps(payload, default=str))


def _retry_countdown(retries: int) -> int:
    # Exponential backoff with cap.
    return int(min(900, max(5, 5 * (2 ** int(max(0, retries))))))


@shared_task(name="escrowcourt.tasks.settlement_tasks.sweep_expired_escrows")
def sweep_expired_escrows_task(limit: int | None = None):
    started = time.perf_counter()
    result = run_escrow_expiry_sweep(limit=limit)
    _task_log("sweep_expired_escrows", status="ok" if result.get("ok") else "partial", started_at=started, **result)
    return result


@shared_task(
    bind=True,
    name="escrowcourt.tasks.settlement_tasks.deliver_domain_event",
    max_retries=MAX_ATTEMPTS - 1,
)
def deliver_domain_event(self, *, event_id: int, trace_id: str = ""):
    started = time.perf_counter()
    result = deliver_event(int(event_id))
    if result.get("ok"):
        _task_log("deliver_domain_event", status="ok", started_at=started, trace_id=trace_id, event_id=event_id)
        return result
    _task_log(
        "deliver_domain_event",
        status="retry",
        started_at=started,
        trace_id=trace_id,
        event_id=event_id,
        error=result.get("error") or result.get("status"),
    )
    raise self.retry(countdown=_retry_countdown(self.request.retries))


@shared_task(name="escrowcourt.tasks.settlement_tasks.flush_outbox")
def flush_outbox_task(limit: int = 200):
    started = time.perf_counter()
    result = run_outbox_flush(limit=limit)
    _task_log("flush_outbox", status="ok" if result.get("ok") else "partial", started_at=started, **result)
    return result


@shared_task(name="escrowcourt.tasks.settlement_tasks.probe_evidence_reference")
def probe_evidence_reference(*, evidence_id: int):
    """Best-effort reachability check; an unreachable URL is only logged."""
    started = time.perf_counter()
    evidence = db.session.get(DisputeEvidence, int(evidence_id))
    if evidence is None:
        return {"ok": False, "evidence_id": int(evidence_id), "error": "not_found"}
    result = probe_reference(evidence.file_url)
    if not result.ok:
        current_app.logger.warning(
            "evidence_unreachable evidence_id=%s dispute_id=%s err=%s",
            evidence.id,
            evidence.dispute_id,
            result.message,
        )
    _task_log("probe_evidence_reference", status="ok" if result.ok else "unreachable", started_at=started, evidence_id=evidence_id)
    return {"ok": result.ok, "evidence_id": int(evidence_id), "code": result.code}
