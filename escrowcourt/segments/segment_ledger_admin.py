from __future__ import annotations

from flask import Blueprint, jsonify, request

from escrowcourt.errors import Forbidden, ValidationFailed
from escrowcourt.jobs.escrow_runner import run_escrow_expiry_sweep, run_outbox_flush
from escrowcourt.services import settlement_coordinator as coordinator
from escrowcourt.utils.auth_context import current_actor

ledger_admin_bp = Blueprint("ledger_admin_bp", __name__, url_prefix="/api/admin")


def _require_admin():
    actor = current_actor()
    if not actor.is_admin:
        raise Forbidden("Admin required")
    return actor


@ledger_admin_bp.get("/ledger/<order_id>")
def ledger_for_order(order_id: str):
    _require_admin()
    report = coordinator.audit_order(order_id)
    return jsonify(report), 200


@ledger_admin_bp.post("/escrow/sweep")
def sweep_escrow():
    _require_admin()
    data = request.get_json(silent=True) or {}
    try:
        limit = int(data.get("limit") or 0) if isinstance(data, dict) else 0
    except (TypeError, ValueError):
        raise ValidationFailed("limit must be an integer", field="limit")
    result = run_escrow_expiry_sweep(limit=limit or None)
    return jsonify(result), 200


@ledger_admin_bp.post("/events/flush")
def flush_events():
    _require_admin()
    return jsonify(run_outbox_flush()), 200
