from __future__ import annotations

from flask import Blueprint, jsonify, request

from escrowcourt.services import settlement_coordinator as coordinator
from escrowcourt.utils.auth_context import current_actor
from escrowcourt.utils.idempotency import run_idempotent

payments_bp = Blueprint("payments_bp", __name__, url_prefix="/api/payments")


def _body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


@payments_bp.post("/partial")
def create_partial_payment():
    actor = current_actor()
    data = _body()

    def _handler():
        payment = coordinator.open_partial_payment(actor, data)
        return {"ok": True, "payment": payment.to_dict()}, 201

    body, status = run_idempotent(actor.id, "payments:partial", data, _handler)
    return jsonify(body), status


@payments_bp.post("/partial/<int:payment_id>/installments")
def record_installment(payment_id: int):
    actor = current_actor()
    data = _body()
    payment = coordinator.record_installment(actor, payment_id, data.get("amount", data.get("additional_amount")))
    return jsonify({"ok": True, "payment": payment.to_dict()}), 200


@payments_bp.post("/partial/<int:payment_id>/refund")
def refund_partial_payment(payment_id: int):
    actor = current_actor()
    data = _body()
    payment = coordinator.refund_partial_payment(actor, payment_id, notes=data.get("notes"))
    return jsonify({"ok": True, "payment": payment.to_dict()}), 200


@payments_bp.post("/escrow")
def create_escrow_payment():
    actor = current_actor()
    data = _body()

    def _handler():
        account = coordinator.open_escrow(actor, data)
        return {"ok": True, "payment": account.to_dict()}, 201

    body, status = run_idempotent(actor.id, "payments:escrow", data, _handler)
    return jsonify(body), status


@payments_bp.get("/escrow/<int:escrow_id>")
def get_escrow_payment(escrow_id: int):
    account = coordinator.get_escrow(current_actor(), escrow_id)
    return jsonify({"ok": True, "payment": account.to_dict()}), 200


@payments_bp.put("/escrow/<int:escrow_id>/release")
def release_escrow_payment(escrow_id: int):
    actor = current_actor()
    data = _body()
    account = coordinator.release_escrow(actor, escrow_id, notes=data.get("notes"))
    return jsonify({"ok": True, "payment": account.to_dict()}), 200


@payments_bp.post("/escrow/<int:escrow_id>/dispute")
def dispute_escrow_payment(escrow_id: int):
    actor = current_actor()
    account, case = coordinator.open_dispute(actor, escrow_id, _body())
    return jsonify({"ok": True, "payment": account.to_dict(), "dispute": case.to_dict()}), 200


@payments_bp.get("")
def list_payments():
    actor = current_actor()
    role = (request.args.get("role") or "").strip().lower() or None
    out = coordinator.list_payments(actor, role=role)
    return jsonify({"ok": True, **out}), 200


@payments_bp.get("/stats")
def payment_stats():
    actor = current_actor()
    role = (request.args.get("role") or "").strip().lower() or None
    return jsonify({"ok": True, "stats": coordinator.payment_stats(actor, role=role)}), 200


@payments_bp.get("/history/<order_id>")
def payment_history(order_id: str):
    items = coordinator.payment_history(current_actor(), order_id)
    return jsonify({"ok": True, "order_id": order_id, "items": items}), 200
