from __future__ import annotations

from datetime import datetime

from flask import current_app

from escrowcourt.services.settlement_coordinator import sweep_expired_escrows
from escrowcourt.utils import clock
from escrowcourt.utils.job_runs import record_job_run


def run_escrow_expiry_sweep(*, limit: int | None = None, now: datetime | None = None) -> dict:
    """Auto-release escrows past their dispute window and record the run."""
    started = clock.utcnow()
    try:
        result = sweep_expired_escrows(limit=limit, now=now)
    except Exception as e:
        record_job_run(job_name="escrow_expiry_sweep", ok=False, started_at=started, error=str(e))
        current_app.logger.exception("escrow_expiry_sweep_failed")
        raise
    record_job_run(
        job_name="escrow_expiry_sweep",
        ok=bool(result.get("ok")),
        started_at=started,
        stats=result,
    )
    current_app.logger.info(
        "escrow_expiry_sweep scanned=%s released=%s skipped=%s errors=%s",
        result.get("scanned"),
        result.get("released"),
        result.get("skipped"),
        result.get("errors"),
    )
    return result


def run_outbox_flush(*, limit: int = 200) -> dict:
    from escrowcourt.services.notification_service import flush_outbox

    started = clock.utcnow()
    result = flush_outbox(limit=limit)
    record_job_run(job_name="outbox_flush", ok=bool(result.get("ok")), started_at=started, stats=result)
    return result
