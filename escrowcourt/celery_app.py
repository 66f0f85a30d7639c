from __future__ import annotations

import json
import os
from datetime import datetime

from celery import Celery
from celery.signals import task_failure, task_retry

TASK_PREFIX = "escrowcourt.tasks.settlement_tasks."
NOTIFY_QUEUE = "notifications"

_observers_installed = False


def _env_seconds(name: str, default: int, *, floor: int = 30) -> float:
    raw = (os.getenv(name) or "").strip()
    try:
        seconds = int(raw) if raw else default
    except ValueError:
        seconds = default
    return float(max(floor, seconds))


def _broker_urls() -> tuple[str, str]:
    redis_url = (os.getenv("REDIS_URL") or "").strip()
    broker = (os.getenv("CELERY_BROKER_URL") or "").strip() or redis_url or "redis://localhost:6379/0"
    backend = (os.getenv("CELERY_RESULT_BACKEND") or "").strip() or redis_url or broker
    return broker, backend


def _beat_schedule() -> dict:
    return {
        "escrow-expiry-sweep": {
            "task": TASK_PREFIX + "sweep_expired_escrows",
            "schedule": _env_seconds("ESCROW_SWEEP_INTERVAL_SECONDS", 300),
        },
        "outbox-flush": {
            "task": TASK_PREFIX + "flush_outbox",
            "schedule": _env_seconds("OUTBOX_FLUSH_INTERVAL_SECONDS", 60),
        },
    }


def _trace_id(kwargs) -> str:
    if not isinstance(kwargs, dict):
        return ""
    return str(kwargs.get("trace_id") or "").strip()


def _install_observers(flask_app) -> None:
    """Log failures and retries of our own tasks as single JSON lines."""
    global _observers_installed
    if _observers_installed:
        return

    def _emit(level, event: str, task_name: str, task_id, **fields):
        if not str(task_name or "").startswith(TASK_PREFIX):
            return
        record = {
            "event": event,
            "task_name": task_name,
            "task_id": str(task_id or ""),
            "timestamp": datetime.utcnow().isoformat(),
        }
        record.update(fields)
        level(json.dumps(record, default=str))

    @task_failure.connect(weak=False)
    def _failed(sender=None, task_id=None, exception=None, kwargs=None, einfo=None, **_):
        _emit(
            flask_app.logger.error,
            "celery_task_failure",
            getattr(sender, "name", ""),
            task_id,
            trace_id=_trace_id(kwargs),
            exception=str(exception or ""),
            einfo=str(einfo) if einfo is not None else None,
        )

    @task_retry.connect(weak=False)
    def _retrying(request=None, reason=None, **_):
        _emit(
            flask_app.logger.warning,
            "celery_task_retry",
            getattr(request, "task", ""),
            getattr(request, "id", ""),
            trace_id=_trace_id(getattr(request, "kwargs", None)),
            reason=str(reason or ""),
            retry_count=int(getattr(request, "retries", 0) or 0),
        )

    _observers_installed = True


def create_celery_app(flask_app) -> Celery:
    broker, backend = _broker_urls()
    celery = Celery(flask_app.import_name, broker=broker, backend=backend)
    celery.conf.update(
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        timezone="UTC",
        enable_utc=True,
        # Settlement work must survive a worker crash mid-task.
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        broker_connection_retry_on_startup=True,
        task_routes={
            TASK_PREFIX + "deliver_domain_event": {"queue": NOTIFY_QUEUE},
            TASK_PREFIX + "probe_evidence_reference": {"queue": NOTIFY_QUEUE},
        },
        beat_schedule=_beat_schedule(),
    )

    class AppContextTask(celery.Task):
        def __call__(self, *args, **kwargs):
            with flask_app.app_context():
                return self.run(*args, **kwargs)

    celery.Task = AppContextTask
    celery.set_default()
    celery.autodiscover_tasks(["escrowcourt.tasks"], related_name="settlement_tasks")
    _install_observers(flask_app)
    return celery
