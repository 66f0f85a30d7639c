from __future__ import annotations

from flask import Blueprint, jsonify, request

from escrowcourt.services import settlement_coordinator as coordinator
from escrowcourt.utils.auth_context import current_actor
from escrowcourt.utils.idempotency import run_idempotent

disputes_bp = Blueprint("disputes_bp", __name__, url_prefix="/api/disputes")


def _body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _decision_payload(case, decision, account) -> dict:
    return {
        "ok": True,
        "dispute": case.to_dict(),
        "decision": decision.to_dict(),
        "escrow": account.to_dict() if account is not None else None,
    }


@disputes_bp.post("")
def create_dispute():
    actor = current_actor()
    data = _body()

    def _handler():
        case = coordinator.create_dispute(actor, data)
        return {"ok": True, "dispute": case.to_dict()}, 201

    body, status = run_idempotent(actor.id, "disputes:create", data, _handler)
    return jsonify(body), status


@disputes_bp.get("")
def list_disputes():
    actor = current_actor()
    rows = coordinator.list_disputes(
        actor,
        status=request.args.get("status"),
        priority=request.args.get("priority"),
    )
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows]}), 200


@disputes_bp.get("/stats")
def dispute_stats():
    return jsonify({"ok": True, "stats": coordinator.dispute_stats(current_actor())}), 200


@disputes_bp.get("/<int:dispute_id>")
def get_dispute(dispute_id: int):
    case = coordinator.get_dispute(current_actor(), dispute_id)
    return jsonify({"ok": True, "dispute": case.to_dict(detail=True)}), 200


@disputes_bp.post("/<int:dispute_id>/evidence")
def add_evidence(dispute_id: int):
    evidence = coordinator.add_evidence(current_actor(), dispute_id, _body())
    return jsonify({"ok": True, "evidence": evidence.to_dict()}), 201


@disputes_bp.post("/<int:dispute_id>/evidence/<int:evidence_id>/verify")
def verify_evidence(dispute_id: int, evidence_id: int):
    evidence = coordinator.verify_evidence(current_actor(), dispute_id, evidence_id)
    return jsonify({"ok": True, "evidence": evidence.to_dict()}), 200


@disputes_bp.post("/<int:dispute_id>/assign")
def assign_admin(dispute_id: int):
    data = _body()
    case = coordinator.assign_admin(current_actor(), dispute_id, data.get("admin_id"))
    return jsonify({"ok": True, "dispute": case.to_dict()}), 200


@disputes_bp.put("/<int:dispute_id>/status")
def update_status(dispute_id: int):
    data = _body()
    case = coordinator.update_status(
        current_actor(),
        dispute_id,
        data.get("status"),
        admin_notes=data.get("admin_notes"),
    )
    return jsonify({"ok": True, "dispute": case.to_dict()}), 200


@disputes_bp.post("/<int:dispute_id>/decision")
def decide(dispute_id: int):
    case, decision, account = coordinator.decide(current_actor(), dispute_id, _body())
    return jsonify(_decision_payload(case, decision, account)), 200


@disputes_bp.post("/<int:dispute_id>/decision/finalize")
def finalize_decision(dispute_id: int):
    case, decision, account = coordinator.finalize_decision(current_actor(), dispute_id)
    return jsonify(_decision_payload(case, decision, account)), 200
