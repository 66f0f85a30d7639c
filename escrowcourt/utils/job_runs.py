from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from escrowcourt.extensions import db
from escrowcourt.models import JobRun
from escrowcourt.utils import clock


def record_job_run(*, job_name: str, ok: bool, started_at: datetime, error: str | None = None, stats: dict | None = None) -> JobRun | None:
    duration_ms = max(0, int((clock.utcnow() - started_at).total_seconds() * 1000))
    try:
        row = JobRun(
            job_name=(job_name or "unknown").strip()[:64],
            ran_at=clock.utcnow(),
            ok=bool(ok),
            duration_ms=duration_ms,
            error=(error or "")[:1000] or None,
            stats_json=JobRun.encode_stats(stats),
        )
        db.session.add(row)
        db.session.commit()
        return row
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.warning("job_run_record_failed job=%s err=%s", job_name, e)
        return None
