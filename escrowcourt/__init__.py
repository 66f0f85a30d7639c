import json
import os
import sys

import click
from flask import Flask, g, jsonify, request
from sqlalchemy import text
from werkzeug.exceptions import HTTPException

from escrowcourt.errors import SettlementError
from escrowcourt.extensions import cors, db, migrate
from escrowcourt.integrations.notifications.factory import notification_health
from escrowcourt.segments.segment_disputes import disputes_bp
from escrowcourt.segments.segment_ledger_admin import ledger_admin_bp
from escrowcourt.segments.segment_payments import payments_bp
from escrowcourt.utils.auth_context import capture_auth_context
from escrowcourt.utils.observability import init_sentry, install_request_observers


def _env_int(name: str, default: int, *, minimum: int = 1, maximum: int = 100000) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        value = int(default)
    else:
        try:
            value = int(raw)
        except ValueError:
            value = int(default)
    if value < minimum:
        value = minimum
    if value > maximum:
        value = maximum
    return value


def _env_flag(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def _error_payload(message: str, code: str) -> dict:
    payload = {"ok": False, "error": message, "code": code}
    rid = (getattr(g, "request_id", "") or "").strip()
    if rid:
        payload["trace_id"] = rid
    return payload


def create_app():
    app = Flask(__name__)
    init_sentry(app)

    env = (os.getenv("ESCROWCOURT_ENV", "dev") or "dev").strip().lower()

    # Production safety checks
    if env in ("prod", "production"):
        secret = (os.getenv("SECRET_KEY") or "").strip()
        if not secret or len(secret) < 16:
            raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")
        if not (os.getenv("DATABASE_URL") or "").strip() and not (os.getenv("SQLALCHEMY_DATABASE_URI") or "").strip():
            raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")

    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY") or "dev-secret-change-me"
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["ESCROWCOURT_ENV"] = env

    instance_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "instance"))
    database_url = os.getenv("SQLALCHEMY_DATABASE_URI") or os.getenv("DATABASE_URL")
    if not database_url:
        os.makedirs(instance_dir, exist_ok=True)
        database_url = f"sqlite:///{os.path.join(instance_dir, 'escrowcourt.db').replace(os.sep, '/')}"
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    app.config["SQLALCHEMY_DATABASE_URI"] = database_url

    engine_options = {
        "pool_pre_ping": True,
        "pool_recycle": _env_int("DB_POOL_RECYCLE_SECONDS", 1800, minimum=60, maximum=86400),
    }
    if not database_url.startswith("sqlite://"):
        engine_options.update(
            {
                "pool_size": _env_int("DB_POOL_SIZE", 10, minimum=1, maximum=200),
                "max_overflow": _env_int("DB_MAX_OVERFLOW", 20, minimum=0, maximum=500),
                "pool_timeout": _env_int("DB_POOL_TIMEOUT_SECONDS", 30, minimum=1, maximum=300),
            }
        )
        app.logger.info(
            "db_pooling_enabled pool_size=%s max_overflow=%s pool_timeout=%s",
            engine_options["pool_size"],
            engine_options["max_overflow"],
            engine_options["pool_timeout"],
        )
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options

    # Settlement rules
    app.config["ESCROW_DISPUTE_WINDOW_DAYS"] = _env_int("ESCROW_DISPUTE_WINDOW_DAYS", 7, minimum=1, maximum=365)
    app.config["EVIDENCE_MAX_BYTES"] = _env_int(
        "EVIDENCE_MAX_BYTES", 10 * 1024 * 1024, minimum=1024, maximum=1024 * 1024 * 1024
    )
    app.config["EVIDENCE_ALLOWED_HOSTS"] = (os.getenv("EVIDENCE_ALLOWED_HOSTS") or "").strip()
    app.config["EVIDENCE_PROBE_ENABLED"] = _env_flag("EVIDENCE_PROBE_ENABLED", False)
    app.config["ESCROW_AUTO_RELEASE_ENABLED"] = _env_flag("ESCROW_AUTO_RELEASE_ENABLED", True)
    app.config["ESCROW_SWEEP_LIMIT"] = _env_int("ESCROW_SWEEP_LIMIT", 500, minimum=1, maximum=10000)

    # Collaborators
    app.config["EVENT_DISPATCH_MODE"] = (os.getenv("EVENT_DISPATCH_MODE") or "outbox").strip().lower()
    app.config["NOTIFY_PROVIDER"] = (os.getenv("NOTIFY_PROVIDER") or "disabled").strip().lower()
    app.config["NOTIFY_WEBHOOK_URL"] = (os.getenv("NOTIFY_WEBHOOK_URL") or "").strip()
    app.config["ORDER_SERVICE_URL"] = (os.getenv("ORDER_SERVICE_URL") or "").strip()

    cors_origins = (os.getenv("CORS_ORIGINS") or "").strip()
    if env in ("prod", "production"):
        origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
    else:
        origins = ["*"] if not cors_origins else [o.strip() for o in cors_origins.split(",") if o.strip()]
    cors.init_app(app, resources={r"/api/*": {"origins": origins}})

    db.init_app(app)
    migrate.init_app(app, db)
    install_request_observers(app)
    app.before_request(capture_auth_context)

    @app.errorhandler(SettlementError)
    def _settlement_error(error: SettlementError):
        g.error_code = error.code
        level = app.logger.warning if error.http_status >= 409 else app.logger.info
        level(
            "settlement_error code=%s status=%s path=%s context=%s",
            error.code,
            error.http_status,
            request.path,
            json.dumps(error.context, default=str, sort_keys=True),
        )
        return jsonify(_error_payload(error.message, error.code)), int(error.http_status)

    @app.errorhandler(HTTPException)
    def _api_http_exception(error: HTTPException):
        # Keep API failures JSON-only.
        if not request.path.startswith("/api/"):
            return error
        code = (error.name or "HTTPError").replace(" ", "")
        return jsonify(_error_payload(error.description or error.name, code)), int(error.code or 500)

    @app.errorhandler(Exception)
    def _api_unhandled_exception(error: Exception):
        app.logger.exception("unhandled_exception path=%s", request.path)
        db.session.rollback()
        return jsonify(_error_payload("Internal server error", "InternalServerError")), 500

    app.register_blueprint(payments_bp)
    app.register_blueprint(disputes_bp)
    app.register_blueprint(ledger_admin_bp)

    @app.get("/api/health")
    def health():
        db_state = "ok"
        db_error = None
        try:
            with db.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            db_state = "fail"
            msg = str(e)
            if msg:
                db_error = (msg[:300] + "...") if len(msg) > 300 else msg
        payload = {
            "ok": db_state == "ok",
            "service": "escrowcourt",
            "env": env,
            "db": db_state,
            "notifications": notification_health(app.config),
            "event_dispatch_mode": app.config["EVENT_DISPATCH_MODE"],
        }
        if db_error:
            payload["db_error"] = db_error
        return jsonify(payload), 200 if db_state == "ok" else 503

    @app.cli.command("sweep-escrow")
    @click.option("--limit", type=int, default=None, help="Maximum accounts to release in this run.")
    def sweep_escrow(limit):
        """Release held escrows whose dispute window has passed."""
        from escrowcourt.jobs.escrow_runner import run_escrow_expiry_sweep

        result = run_escrow_expiry_sweep(limit=limit)
        click.echo(json.dumps(result, indent=2))

    @app.cli.command("verify-ledger")
    def verify_ledger():
        """Re-fold every account's ledger; exits 2 when any account drifted."""
        from escrowcourt.services.settlement_coordinator import verify_all_ledgers

        summary = verify_all_ledgers()
        click.echo(json.dumps(summary, indent=2))
        if summary["drift_count"]:
            sys.exit(2)

    @app.cli.command("flush-outbox")
    @click.option("--limit", type=int, default=200)
    def flush_outbox(limit):
        """Deliver queued domain events now."""
        from escrowcourt.jobs.escrow_runner import run_outbox_flush

        click.echo(json.dumps(run_outbox_flush(limit=limit), indent=2))

    return app
