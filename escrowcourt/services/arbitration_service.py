from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from escrowcourt.errors import DecisionAlreadyFinal, InvalidRefundAmount, ValidationFailed
from escrowcourt.extensions import db
from escrowcourt.models import ArbitrationDecision, DisputeCase
from escrowcourt.services.actors import Actor
from escrowcourt.utils import clock
from escrowcourt.utils.money import ZERO, parse_amount, quantize


class DecisionType:
    CUSTOMER_WINS = "customer_wins"
    STORE_WINS = "store_wins"
    PARTIAL_CUSTOMER = "partial_customer"
    PARTIAL_STORE = "partial_store"
    NO_FAULT = "no_fault"

    ALL = (CUSTOMER_WINS, STORE_WINS, PARTIAL_CUSTOMER, PARTIAL_STORE, NO_FAULT)
    PARTIAL = {PARTIAL_CUSTOMER, PARTIAL_STORE}

    RESOLUTION_TYPE = {
        CUSTOMER_WINS: "refund",
        PARTIAL_CUSTOMER: "partial_refund",
        PARTIAL_STORE: "partial_refund",
        STORE_WINS: "no_action",
        NO_FAULT: "no_action",
    }


@dataclass(frozen=True)
class SettlementPlan:
    """How a ruling splits the escrowed amount."""

    refund: Decimal
    release: Decimal

    @property
    def refunds_customer(self) -> bool:
        return self.refund > ZERO


def normalize_decision_type(value) -> str:
    decision_type = str(value or "").strip().lower()
    if decision_type not in DecisionType.ALL:
        raise ValidationFailed(
            f"decision_type must be one of: {', '.join(DecisionType.ALL)}", field="decision_type"
        )
    return decision_type


def settlement_plan(decision_type: str, amount: Decimal, refund_amount: Decimal | None) -> SettlementPlan:
    amount = quantize(amount)
    if decision_type in (DecisionType.STORE_WINS, DecisionType.NO_FAULT):
        return SettlementPlan(refund=ZERO, release=amount)
    if decision_type == DecisionType.CUSTOMER_WINS:
        return SettlementPlan(refund=amount, release=ZERO)
    refund = quantize(refund_amount or 0)
    if refund <= ZERO or refund >= amount:
        raise InvalidRefundAmount(
            f"refund_amount for a partial decision must be between 0 and {amount} exclusive",
            refund_amount=str(refund),
        )
    return SettlementPlan(refund=refund, release=amount - refund)


def _penalty(value, field: str) -> Decimal:
    if value in (None, ""):
        return ZERO
    return parse_amount(value, field=field, allow_zero=True)


def record_decision(
    dispute: DisputeCase,
    *,
    admin: Actor,
    decision_type: str,
    decision_reason: str,
    customer_penalty=None,
    store_penalty=None,
    refund_amount=None,
    additional_notes: str | None = None,
    is_final: bool = True,
) -> ArbitrationDecision:
    """Create the case's decision, or overwrite its draft.

    Refund and penalties are normalized against the escrowed amount so the
    stored decision always matches what settlement will actually move.
    """
    decision_type = normalize_decision_type(decision_type)
    reason = str(decision_reason or "").strip()
    if not reason:
        raise ValidationFailed("decision_reason is required", field="decision_reason")

    c_penalty = _penalty(customer_penalty, "customer_penalty")
    s_penalty = _penalty(store_penalty, "store_penalty")
    if decision_type == DecisionType.NO_FAULT:
        c_penalty = ZERO
        s_penalty = ZERO

    if dispute.escrow is not None:
        requested = None
        if decision_type in DecisionType.PARTIAL:
            requested = parse_amount(refund_amount, field="refund_amount")
        refund = settlement_plan(decision_type, dispute.escrow.amount, requested).refund
    elif refund_amount in (None, ""):
        refund = ZERO
    else:
        refund = parse_amount(refund_amount, field="refund_amount", allow_zero=True)

    decision = dispute.decision
    now = clock.utcnow()
    if decision is not None and decision.is_final:
        raise DecisionAlreadyFinal("dispute already has a final decision", dispute_id=dispute.id)
    if decision is None:
        decision = ArbitrationDecision(dispute_id=int(dispute.id), created_at=now)
        dispute.decision = decision

    decision.admin_id = admin.id
    decision.decision_type = decision_type
    decision.decision_reason = reason
    decision.customer_penalty = c_penalty
    decision.store_penalty = s_penalty
    decision.refund_amount = refund
    decision.additional_notes = str(additional_notes or "").strip() or None
    decision.is_final = bool(is_final)
    decision.finalized_at = now if is_final else None
    decision.updated_at = now
    db.session.add(decision)
    db.session.flush()
    return decision


def finalize(decision: ArbitrationDecision) -> ArbitrationDecision:
    if decision.is_final:
        raise DecisionAlreadyFinal("decision is already final", decision_id=decision.id)
    now = clock.utcnow()
    decision.is_final = True
    decision.finalized_at = now
    decision.updated_at = now
    db.session.add(decision)
    db.session.flush()
    return decision
