from __future__ import annotations

import hashlib
import json
import os
import time
import uuid

from flask import current_app, g, has_request_context, request

from escrowcourt.utils import clock

_REDACTED_HEADERS = {"authorization", "x-api-key", "cookie", "set-cookie", "idempotency-key"}


def get_request_id() -> str:
    if not has_request_context():
        return ""
    return getattr(g, "request_id", "") or ""


def _sample_rate() -> float:
    try:
        rate = float((os.getenv("SENTRY_TRACES_SAMPLE_RATE") or "0").strip())
    except ValueError:
        rate = 0.0
    return max(0.0, min(rate, 1.0))


def _scrub_event(event, hint):
    request_data = event.get("request") or {}
    headers = request_data.get("headers") or {}
    for name in list(headers):
        if name.lower() in _REDACTED_HEADERS:
            headers[name] = "[REDACTED]"
    request_data["headers"] = headers
    event["request"] = request_data
    return event


def init_sentry(app) -> None:
    """Sentry is optional; without SENTRY_DSN nothing is imported or sent.

    Business rejections (SettlementError below 423) are expected traffic and
    are not reported.
    """
    dsn = (os.getenv("SENTRY_DSN") or "").strip()
    if not dsn:
        app.logger.info("sentry_disabled_no_dsn")
        return
    try:
        import sentry_sdk
        from sentry_sdk.integrations.flask import FlaskIntegration

        from escrowcourt.errors import SettlementError

        def _before_send(event, hint):
            exc_info = (hint or {}).get("exc_info")
            if exc_info and isinstance(exc_info[1], SettlementError) and exc_info[1].http_status < 423:
                return None
            return _scrub_event(event, hint)

        sentry_sdk.init(
            dsn=dsn,
            environment=(os.getenv("SENTRY_ENVIRONMENT") or os.getenv("ESCROWCOURT_ENV") or "dev"),
            release=(os.getenv("GIT_SHA") or "unknown"),
            integrations=[FlaskIntegration()],
            send_default_pii=False,
            traces_sample_rate=_sample_rate(),
            before_send=_before_send,
        )
        app.logger.info("sentry_enabled")
    except Exception as e:
        app.logger.warning("sentry_init_failed err=%s", e)


def raise_alarm(message: str, **context) -> None:
    """CRITICAL log line plus a fatal Sentry message when Sentry is configured."""
    current_app.logger.critical("%s %s", message, json.dumps(context, default=str, sort_keys=True))
    try:
        import sentry_sdk

        with sentry_sdk.new_scope() as scope:
            for key, value in context.items():
                scope.set_extra(str(key), str(value))
            scope.set_tag("alarm", message)
            sentry_sdk.capture_message(message, level="fatal")
    except Exception as e:
        current_app.logger.warning("sentry_alarm_failed err=%s", e)


def _client_fingerprint(salt: str) -> str:
    forwarded = request.headers.get("X-Forwarded-For", request.remote_addr or "")
    return hashlib.sha256(f"{salt}:{forwarded or ''}".encode("utf-8")).hexdigest()[:16]


def install_request_observers(app) -> None:
    """Assign each request an id and write one JSON access line per response."""

    @app.before_request
    def _begin():
        incoming = (request.headers.get("X-Request-Id") or "").strip()
        g.request_id = (incoming or uuid.uuid4().hex)[:80]
        g.request_started_at = time.perf_counter()

    @app.after_request
    def _end(response):
        request_id = get_request_id() or uuid.uuid4().hex
        response.headers["X-Request-Id"] = request_id
        started = getattr(g, "request_started_at", None)
        line = {
            "ts": clock.utcnow().isoformat(),
            "request_id": request_id,
            "method": request.method,
            "path": request.path,
            "status": int(response.status_code),
            "latency_ms": round((time.perf_counter() - started) * 1000.0, 2) if started is not None else None,
            "actor_id": getattr(g, "auth_user_id", None),
            "role": getattr(g, "auth_role", None),
            "error_code": getattr(g, "error_code", None),
            "client": _client_fingerprint(app.config.get("SECRET_KEY", "escrowcourt")),
        }
        app.logger.info(json.dumps(line))
        return response
