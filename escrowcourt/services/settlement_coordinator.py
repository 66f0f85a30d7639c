"""Public entry point for every escrow, partial-payment and dispute operation.

Each mutating call runs inside `unit_of_work()`: the escrow row is locked,
services flush their changes, the ledger is re-folded and checked, and only
then is the transaction committed. Domain events staged along the way are
handed to the notification path after the commit.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from escrowcourt.errors import (
    ConcurrentModification,
    DecisionAlreadyFinal,
    DecisionRequired,
    DisputeInProgress,
    DisputeNotInvestigating,
    EscrowFrozen,
    Forbidden,
    LedgerIntegrityError,
    NotFound,
    PaymentModeConflict,
    ValidationFailed,
)
from escrowcourt.extensions import db
from escrowcourt.integrations.common import CollaboratorUnavailable
from escrowcourt.integrations.filestore import resolve_reference
from escrowcourt.integrations.orders.factory import build_order_lookup
from escrowcourt.models import DisputeCase, EscrowAccount, PartialPayment
from escrowcourt.services import (
    arbitration_service,
    dispute_service,
    escrow_service,
    ledger_service,
    notification_service,
    partial_payment_service,
)
from escrowcourt.services.actors import Actor, ActorRole
from escrowcourt.services.dispute_service import ActionType, DisputeStatus
from escrowcourt.services.escrow_service import EscrowStatus
from escrowcourt.services.partial_payment_service import PartialPaymentStatus
from escrowcourt.utils import clock
from escrowcourt.utils.events import publish_event
from escrowcourt.utils.money import ZERO, parse_amount, quantize
from escrowcourt.utils.observability import raise_alarm

logger = logging.getLogger(__name__)


@dataclass
class UnitOfWork:
    events: list[int] = field(default_factory=list)
    escrow_id: int | None = None
    payment_id: int | None = None

    def emit(self, event_type: str, *, actor: Actor, subject_type: str, subject_id, recipients, metadata=None, severity="INFO"):
        event = publish_event(
            event_type,
            actor_id=actor.id,
            subject_type=subject_type,
            subject_id=subject_id,
            recipients=recipients,
            severity=severity,
            metadata=metadata or {},
        )
        self.events.append(int(event.id))
        return event


@contextmanager
def unit_of_work():
    work = UnitOfWork()
    try:
        yield work
        db.session.commit()
    except EscrowFrozen:
        db.session.rollback()
        raise
    except LedgerIntegrityError as e:
        db.session.rollback()
        _quarantine(work, e)
        raise
    except IntegrityError as e:
        db.session.rollback()
        raise ConcurrentModification("a concurrent request changed the same record; retry") from e
    except Exception:
        db.session.rollback()
        raise
    notification_service.dispatch_committed(work.events)


def _quarantine(work: UnitOfWork, err: LedgerIntegrityError) -> None:
    """Freeze the affected escrow in its own transaction and alert operators."""
    if work.escrow_id is not None:
        try:
            EscrowAccount.query.filter_by(id=int(work.escrow_id)).update(
                {"frozen": True, "updated_at": clock.utcnow()}, synchronize_session=False
            )
            db.session.commit()
        except SQLAlchemyError as freeze_err:
            db.session.rollback()
            logger.error("escrow_freeze_failed escrow_id=%s err=%s", work.escrow_id, freeze_err)
    raise_alarm(
        "ledger_integrity_violation",
        escrow_id=work.escrow_id,
        payment_id=work.payment_id,
        error=err.message,
    )


def _config(key: str, default=None):
    return current_app.config.get(key, default)


def _text(data: dict, key: str, *, required: bool = True, limit: int = 64) -> str | None:
    value = str(data.get(key) or "").strip()
    if not value:
        if required:
            raise ValidationFailed(f"{key} is required", field=key)
        return None
    return value[:limit]


def _parse_due_date(value) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value
    raw = str(value).strip().replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        raise ValidationFailed("due_date must be an ISO-8601 date", field="due_date")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _require_admin(actor: Actor) -> None:
    if not actor.is_admin:
        raise Forbidden("Admin required")


def _require_party_or_admin(actor: Actor, record) -> None:
    if actor.is_admin or actor.is_party_to(record):
        return
    raise Forbidden("Not a party to this record")


def _require_customer_or_admin(actor: Actor, record) -> None:
    if actor.is_admin:
        return
    if actor.role == ActorRole.CUSTOMER and actor.is_party_to(record):
        return
    raise Forbidden("Only the paying customer or an admin may do this")


def _check_order_exists(order_id: str) -> None:
    lookup = build_order_lookup(current_app.config)
    if lookup is None:
        return
    try:
        found = lookup.exists(order_id)
    except CollaboratorUnavailable as e:
        logger.warning("order_lookup_unavailable order_id=%s err=%s", order_id, e)
        return
    if not found:
        raise NotFound("Order not found", order_id=order_id)


def _lock_escrow(work: UnitOfWork, escrow_id) -> EscrowAccount:
    try:
        escrow_id = int(escrow_id)
    except (TypeError, ValueError):
        raise NotFound("Escrow payment not found", escrow_id=escrow_id)
    account = EscrowAccount.query.filter_by(id=escrow_id).with_for_update().first()
    if account is None:
        raise NotFound("Escrow payment not found", escrow_id=escrow_id)
    db.session.refresh(account)
    if account.frozen:
        raise EscrowFrozen("escrow is frozen pending ledger review", escrow_id=escrow_id)
    work.escrow_id = escrow_id
    escrow_service.verify_ledger(account)
    return account


def _lock_partial(work: UnitOfWork, payment_id) -> PartialPayment:
    try:
        payment_id = int(payment_id)
    except (TypeError, ValueError):
        raise NotFound("Partial payment not found", payment_id=payment_id)
    payment = PartialPayment.query.filter_by(id=payment_id).with_for_update().first()
    if payment is None:
        raise NotFound("Partial payment not found", payment_id=payment_id)
    db.session.refresh(payment)
    work.payment_id = payment_id
    partial_payment_service.verify_ledger(payment)
    return payment


def _ensure_single_payment_mode(order_id: str) -> None:
    if EscrowAccount.query.filter_by(order_id=order_id).first() is not None:
        raise PaymentModeConflict("order already has an escrow payment", order_id=order_id)
    if PartialPayment.query.filter_by(order_id=order_id).first() is not None:
        raise PaymentModeConflict("order already has a partial payment", order_id=order_id)


# Payments

def open_partial_payment(actor: Actor, data: dict) -> PartialPayment:
    order_id = _text(data, "order_id")
    customer_id = _text(data, "customer_id")
    store_id = _text(data, "store_id")
    if not actor.is_admin and not (actor.role == ActorRole.CUSTOMER and actor.id == customer_id):
        raise Forbidden("Only the paying customer or an admin may open a payment")
    total = parse_amount(data.get("total_amount"), field="total_amount")
    percentage = partial_payment_service.parse_percentage(data.get("percentage", data.get("payment_percentage")))
    due_date = _parse_due_date(data.get("due_date"))
    _check_order_exists(order_id)

    with unit_of_work() as work:
        _ensure_single_payment_mode(order_id)
        payment = partial_payment_service.create_payment(
            order_id=order_id,
            customer_id=customer_id,
            store_id=store_id,
            total_amount=total,
            percentage=percentage,
            actor=actor,
            due_date=due_date,
            payment_method=data.get("payment_method"),
        )
        work.payment_id = int(payment.id)
        partial_payment_service.verify_ledger(payment)
        work.emit(
            "partial_payment_opened",
            actor=actor,
            subject_type="partial_payment",
            subject_id=payment.id,
            recipients=[customer_id, store_id],
            metadata={"order_id": order_id, "paid_amount": payment.paid_amount, "status": payment.status},
        )
    logger.info("partial_payment_opened payment_id=%s order_id=%s status=%s", payment.id, order_id, payment.status)
    return payment


def record_installment(actor: Actor, payment_id, amount) -> PartialPayment:
    with unit_of_work() as work:
        payment = _lock_partial(work, payment_id)
        _require_customer_or_admin(actor, payment)
        partial_payment_service.record_installment(payment, amount, actor=actor)
        partial_payment_service.verify_ledger(payment)
        work.emit(
            "partial_payment_installment",
            actor=actor,
            subject_type="partial_payment",
            subject_id=payment.id,
            recipients=[payment.customer_id, payment.store_id],
            metadata={"remaining_amount": payment.remaining_amount, "status": payment.status},
        )
    logger.info("partial_installment payment_id=%s status=%s", payment.id, payment.status)
    return payment


def refund_partial_payment(actor: Actor, payment_id, *, notes: str | None = None) -> PartialPayment:
    _require_admin(actor)
    with unit_of_work() as work:
        payment = _lock_partial(work, payment_id)
        partial_payment_service.refund(payment, actor=actor, notes=notes)
        partial_payment_service.verify_ledger(payment)
        work.emit(
            "partial_payment_refunded",
            actor=actor,
            subject_type="partial_payment",
            subject_id=payment.id,
            recipients=[payment.customer_id, payment.store_id],
            metadata={"refunded_amount": payment.paid_amount},
        )
    logger.info("partial_refunded payment_id=%s", payment.id)
    return payment


def open_escrow(actor: Actor, data: dict) -> EscrowAccount:
    order_id = _text(data, "order_id")
    customer_id = _text(data, "customer_id")
    store_id = _text(data, "store_id")
    if not actor.is_admin and not (actor.role == ActorRole.CUSTOMER and actor.id == customer_id):
        raise Forbidden("Only the paying customer or an admin may open a payment")
    amount = parse_amount(data.get("amount"), field="amount")
    _check_order_exists(order_id)

    with unit_of_work() as work:
        _ensure_single_payment_mode(order_id)
        account = escrow_service.create_account(
            order_id=order_id,
            customer_id=customer_id,
            store_id=store_id,
            amount=amount,
            actor=actor,
            release_conditions=data.get("release_conditions"),
            payment_method=data.get("payment_method"),
            window_days=int(_config("ESCROW_DISPUTE_WINDOW_DAYS", escrow_service.DEFAULT_DISPUTE_WINDOW_DAYS)),
        )
        work.escrow_id = int(account.id)
        escrow_service.verify_ledger(account)
        work.emit(
            "escrow_opened",
            actor=actor,
            subject_type="escrow",
            subject_id=account.id,
            recipients=[customer_id, store_id],
            metadata={"order_id": order_id, "amount": account.amount, "dispute_deadline": account.dispute_deadline},
        )
    logger.info("escrow_opened escrow_id=%s order_id=%s amount=%s", account.id, order_id, account.amount)
    return account


def release_escrow(actor: Actor, escrow_id, *, notes: str | None = None) -> EscrowAccount:
    with unit_of_work() as work:
        account = _lock_escrow(work, escrow_id)
        _require_customer_or_admin(actor, account)
        if escrow_service.has_active_dispute(account):
            raise DisputeInProgress("escrow has an active dispute", escrow_id=int(account.id))
        escrow_service.release(account, actor=actor, notes=notes)
        escrow_service.verify_ledger(account)
        work.emit(
            "escrow_released",
            actor=actor,
            subject_type="escrow",
            subject_id=account.id,
            recipients=[account.customer_id, account.store_id],
            metadata={"order_id": account.order_id, "amount": account.amount},
        )
    logger.info("escrow_released escrow_id=%s actor=%s", account.id, actor.id)
    return account


def _open_case_on_escrow(work: UnitOfWork, actor: Actor, account: EscrowAccount, data: dict) -> DisputeCase:
    reason = str(data.get("reason") or data.get("description") or "").strip()
    if not reason:
        raise ValidationFailed("reason is required", field="reason")
    escrow_service.mark_disputed(account, actor=actor, reason=reason)
    case = dispute_service.open_case(
        order_id=account.order_id,
        customer_id=account.customer_id,
        store_id=account.store_id,
        actor=actor,
        dispute_type=data.get("dispute_type") or "other",
        subject=str(data.get("subject") or reason)[:200],
        description=data.get("description") or reason,
        priority=data.get("priority"),
        escrow_id=int(account.id),
        conversation_id=data.get("conversation_id"),
    )
    escrow_service.verify_ledger(account)
    work.emit(
        "dispute_opened",
        actor=actor,
        subject_type="dispute",
        subject_id=case.id,
        recipients=[account.customer_id, account.store_id],
        metadata={"escrow_id": int(account.id), "order_id": account.order_id, "reason": reason},
        severity="WARN",
    )
    return case


def open_dispute(actor: Actor, escrow_id, data: dict) -> tuple[EscrowAccount, DisputeCase]:
    with unit_of_work() as work:
        account = _lock_escrow(work, escrow_id)
        _require_party_or_admin(actor, account)
        case = _open_case_on_escrow(work, actor, account, data)
    logger.info("dispute_opened dispute_id=%s escrow_id=%s actor=%s", case.id, account.id, actor.id)
    return account, case


DISPUTE_REQUIRED_FIELDS = (
    "order_id",
    "conversation_id",
    "customer_id",
    "store_id",
    "dispute_type",
    "subject",
    "description",
)


def create_dispute(actor: Actor, data: dict) -> DisputeCase:
    missing = [key for key in DISPUTE_REQUIRED_FIELDS if _text(data, key, required=False) is None]
    if missing:
        raise ValidationFailed(f"missing required fields: {', '.join(missing)}", field=missing[0])
    order_id = _text(data, "order_id")
    customer_id = _text(data, "customer_id")
    store_id = _text(data, "store_id")
    if not actor.is_admin and actor.id not in (customer_id, store_id):
        raise Forbidden("Not a party to this order")
    escrow_ref = data.get("escrow_payment_id", data.get("escrow_id"))
    if escrow_ref in (None, ""):
        existing = EscrowAccount.query.filter_by(order_id=order_id).first()
        escrow_ref = int(existing.id) if existing is not None else None

    if escrow_ref is not None:
        with unit_of_work() as work:
            account = _lock_escrow(work, escrow_ref)
            if account.order_id != order_id:
                raise ValidationFailed("escrow_payment_id does not belong to order_id", field="escrow_payment_id")
            if (account.customer_id, account.store_id) != (customer_id, store_id):
                raise ValidationFailed("customer_id and store_id must match the escrow payment", field="customer_id")
            _require_party_or_admin(actor, account)
            payload = dict(data)
            payload.setdefault("reason", data.get("subject"))
            case = _open_case_on_escrow(work, actor, account, payload)
        logger.info("dispute_opened dispute_id=%s escrow_id=%s actor=%s", case.id, account.id, actor.id)
        return case

    with unit_of_work() as work:
        case = dispute_service.open_case(
            order_id=order_id,
            customer_id=customer_id,
            store_id=store_id,
            actor=actor,
            dispute_type=data.get("dispute_type"),
            subject=data.get("subject"),
            description=data.get("description"),
            priority=data.get("priority"),
            conversation_id=data.get("conversation_id"),
        )
        work.emit(
            "dispute_opened",
            actor=actor,
            subject_type="dispute",
            subject_id=case.id,
            recipients=[customer_id, store_id],
            metadata={"order_id": order_id},
            severity="WARN",
        )
    logger.info("dispute_opened dispute_id=%s order_id=%s without escrow", case.id, order_id)
    return case


# Disputes

def _load_case(work: UnitOfWork, dispute_id) -> tuple[DisputeCase, EscrowAccount | None]:
    case = dispute_service.get_case(dispute_id)
    account = None
    if case.escrow_id is not None:
        account = _lock_escrow(work, case.escrow_id)
    db.session.refresh(case)
    return case, account


def add_evidence(actor: Actor, dispute_id, data: dict):
    file_url = resolve_reference(data.get("file_url"), allowed_hosts=_config("EVIDENCE_ALLOWED_HOSTS"))
    with unit_of_work() as work:
        case, _account = _load_case(work, dispute_id)
        _require_party_or_admin(actor, case)
        evidence = dispute_service.add_evidence(
            case,
            actor=actor,
            evidence_type=data.get("evidence_type"),
            file_url=file_url,
            file_name=data.get("file_name"),
            file_size=data.get("file_size"),
            file_type=data.get("file_type"),
            description=data.get("description"),
            checksum=data.get("checksum"),
            max_bytes=int(_config("EVIDENCE_MAX_BYTES", dispute_service.DEFAULT_EVIDENCE_MAX_BYTES)),
        )
        work.emit(
            "dispute_evidence_added",
            actor=actor,
            subject_type="dispute",
            subject_id=case.id,
            recipients=[case.customer_id, case.store_id, case.assigned_admin_id],
            metadata={"evidence_id": int(evidence.id), "evidence_type": evidence.evidence_type},
        )
    if _config("EVIDENCE_PROBE_ENABLED"):
        _schedule_probe(int(evidence.id))
    return evidence


def _schedule_probe(evidence_id: int) -> None:
    try:
        from escrowcourt.tasks.settlement_tasks import probe_evidence_reference

        probe_evidence_reference.delay(evidence_id=evidence_id)
    except Exception as e:
        logger.warning("evidence_probe_enqueue_failed evidence_id=%s err=%s", evidence_id, e)


def verify_evidence(actor: Actor, dispute_id, evidence_id):
    _require_admin(actor)
    with unit_of_work() as work:
        case, _account = _load_case(work, dispute_id)
        evidence = dispute_service.verify_evidence(case, evidence_id, admin=actor)
    return evidence


def assign_admin(actor: Actor, dispute_id, admin_id: str | None = None) -> DisputeCase:
    _require_admin(actor)
    with unit_of_work() as work:
        case, _account = _load_case(work, dispute_id)
        dispute_service.assign_admin(case, admin_id or actor.id, actor=actor)
        work.emit(
            "dispute_admin_assigned",
            actor=actor,
            subject_type="dispute",
            subject_id=case.id,
            recipients=[case.customer_id, case.store_id, case.assigned_admin_id],
            metadata={"assigned_admin_id": case.assigned_admin_id},
        )
    return case


def update_status(actor: Actor, dispute_id, new_status, *, admin_notes: str | None = None) -> DisputeCase:
    _require_admin(actor)
    target = dispute_service.normalize_choice(new_status, DisputeStatus.ALL, field="status")
    with unit_of_work() as work:
        case, account = _load_case(work, dispute_id)
        decision = case.decision
        if target == DisputeStatus.RESOLVED and (decision is None or not decision.is_final):
            raise DecisionRequired("a final decision is required before resolving", dispute_id=int(case.id))

        abandoned = (
            target == DisputeStatus.CLOSED
            and case.status != DisputeStatus.RESOLVED
            and account is not None
            and account.status == EscrowStatus.DISPUTED
        )
        if abandoned:
            case.resolution = case.resolution or "Closed without ruling; funds released to store"
            case.resolution_type = case.resolution_type or "no_action"
        dispute_service.change_status(case, target, actor=actor, admin_notes=admin_notes)
        if abandoned:
            escrow_service.release_abandoned(account, actor=actor, dispute_id=int(case.id))
        if account is not None:
            escrow_service.verify_ledger(account)
        work.emit(
            "dispute_status_changed",
            actor=actor,
            subject_type="dispute",
            subject_id=case.id,
            recipients=[case.customer_id, case.store_id],
            metadata={"status": case.status, "escrow_released": abandoned},
        )
    logger.info("dispute_status dispute_id=%s status=%s", case.id, case.status)
    return case


def _apply_final_decision(work: UnitOfWork, actor: Actor, case: DisputeCase, account: EscrowAccount | None, decision) -> None:
    if account is not None:
        escrow_service.resolve(account, decision, actor=actor)
        escrow_service.verify_ledger(account)
    case.resolution = decision.decision_reason
    case.resolution_type = arbitration_service.DecisionType.RESOLUTION_TYPE[decision.decision_type]
    case.refund_amount = quantize(decision.refund_amount)
    dispute_service.change_status(case, DisputeStatus.RESOLVED, actor=actor, action_type=ActionType.RESOLVED)
    work.emit(
        "dispute_resolved",
        actor=actor,
        subject_type="dispute",
        subject_id=case.id,
        recipients=[case.customer_id, case.store_id],
        metadata={
            "decision_id": int(decision.id),
            "decision_type": decision.decision_type,
            "refund_amount": decision.refund_amount,
            "escrow_status": account.status if account is not None else None,
        },
    )


def decide(actor: Actor, dispute_id, data: dict):
    """Record an arbitration decision; a final one settles the escrow in the same transaction."""
    _require_admin(actor)
    is_final = data.get("is_final", True)
    if isinstance(is_final, str):
        is_final = is_final.strip().lower() not in ("0", "false", "no", "off")
    with unit_of_work() as work:
        case, account = _load_case(work, dispute_id)
        if case.decision is not None and case.decision.is_final:
            raise DecisionAlreadyFinal("dispute already has a final decision", dispute_id=int(case.id))
        if case.status not in DisputeStatus.DECIDABLE:
            raise DisputeNotInvestigating(
                f"decisions are only accepted while open or investigating, dispute is {case.status}",
                dispute_id=int(case.id),
            )
        decision = arbitration_service.record_decision(
            case,
            admin=actor,
            decision_type=data.get("decision_type"),
            decision_reason=data.get("decision_reason"),
            customer_penalty=data.get("customer_penalty"),
            store_penalty=data.get("store_penalty"),
            refund_amount=data.get("refund_amount"),
            additional_notes=data.get("additional_notes"),
            is_final=bool(is_final),
        )
        if decision.is_final:
            _apply_final_decision(work, actor, case, account, decision)
        else:
            dispute_service.record_action(
                case,
                ActionType.UPDATED,
                actor=actor,
                description=f"Draft decision {decision.decision_type} recorded",
                metadata={"decision_id": int(decision.id)},
            )
    logger.info(
        "dispute_decision dispute_id=%s decision_id=%s type=%s final=%s",
        case.id,
        decision.id,
        decision.decision_type,
        decision.is_final,
    )
    return case, decision, account


def finalize_decision(actor: Actor, dispute_id):
    _require_admin(actor)
    with unit_of_work() as work:
        case, account = _load_case(work, dispute_id)
        decision = case.decision
        if decision is None:
            raise DecisionRequired("no draft decision to finalize", dispute_id=int(case.id))
        if decision.is_final:
            raise DecisionAlreadyFinal("decision is already final", dispute_id=int(case.id))
        if case.status not in DisputeStatus.DECIDABLE:
            raise DisputeNotInvestigating(
                f"decisions are only accepted while open or investigating, dispute is {case.status}",
                dispute_id=int(case.id),
            )
        arbitration_service.finalize(decision)
        _apply_final_decision(work, actor, case, account, decision)
    return case, decision, account


# Background sweep

def sweep_expired_escrows(*, limit: int | None = None, now: datetime | None = None) -> dict:
    """Release held escrows whose dispute window passed without a dispute.

    Safe to run repeatedly: each account is re-checked under lock and already
    settled accounts are skipped.
    """
    if not _config("ESCROW_AUTO_RELEASE_ENABLED", True):
        return {"ok": True, "enabled": False, "scanned": 0, "released": 0, "skipped": 0, "errors": 0}
    now = now or clock.utcnow()
    limit = int(limit or _config("ESCROW_SWEEP_LIMIT", 500))
    candidate_ids = [int(a.id) for a in escrow_service.expired_candidates(now=now, limit=limit)]
    system = Actor.system()
    released = 0
    skipped = 0
    errors = 0
    for escrow_id in candidate_ids:
        try:
            with unit_of_work() as work:
                account = _lock_escrow(work, escrow_id)
                if (
                    account.status != EscrowStatus.HELD
                    or account.dispute_deadline >= now
                    or DisputeCase.query.filter_by(escrow_id=int(account.id)).first() is not None
                ):
                    skipped += 1
                    continue
                escrow_service.release(account, actor=system, notes="Auto-released after dispute window")
                escrow_service.verify_ledger(account)
                work.emit(
                    "escrow_auto_released",
                    actor=system,
                    subject_type="escrow",
                    subject_id=account.id,
                    recipients=[account.customer_id, account.store_id],
                    metadata={"order_id": account.order_id, "amount": account.amount},
                )
            released += 1
        except (ConcurrentModification, EscrowFrozen) as e:
            skipped += 1
            logger.info("escrow_sweep_skip escrow_id=%s reason=%s", escrow_id, e.code)
        except LedgerIntegrityError as e:
            errors += 1
            logger.error("escrow_sweep_integrity escrow_id=%s err=%s", escrow_id, e.message)
    return {
        "ok": errors == 0,
        "enabled": True,
        "scanned": len(candidate_ids),
        "released": released,
        "skipped": skipped,
        "errors": errors,
    }


# Ledger audit

def audit_order(order_id: str) -> dict:
    """Replay an order's ledger and re-fold every account it touches.

    Drifted escrow accounts are frozen and alarmed.
    """
    entries = ledger_service.replay(order_id)
    accounts = []
    ok = True
    escrow = EscrowAccount.query.filter_by(order_id=order_id).first()
    if escrow is not None:
        accounts.append(_audit_account(UnitOfWork(escrow_id=int(escrow.id)), escrow_service.verify_ledger, escrow, "escrow"))
    payment = PartialPayment.query.filter_by(order_id=order_id).first()
    if payment is not None:
        accounts.append(
            _audit_account(UnitOfWork(payment_id=int(payment.id)), partial_payment_service.verify_ledger, payment, "partial")
        )
    if escrow is None and payment is None and not entries:
        raise NotFound("No payments for this order", order_id=order_id)
    for report in accounts:
        ok = ok and report["ok"]
    return {"ok": ok, "order_id": order_id, "entries": [e.to_dict() for e in entries], "accounts": accounts}


def _audit_account(work: UnitOfWork, verify, record, account_type: str) -> dict:
    try:
        report = verify(record)
    except LedgerIntegrityError as e:
        db.session.rollback()
        _quarantine(work, e)
        return {"ok": False, "account_type": account_type, "account_id": int(record.id), "error": e.message}
    report.update({"ok": True, "account_type": account_type, "account_id": int(record.id)})
    return report


def verify_all_ledgers(*, limit: int = 10000) -> dict:
    drift = []
    checked = 0
    for record in EscrowAccount.query.order_by(EscrowAccount.id.asc()).limit(int(limit)).all():
        checked += 1
        report = _audit_account(UnitOfWork(escrow_id=int(record.id)), escrow_service.verify_ledger, record, "escrow")
        if not report["ok"]:
            drift.append(report)
    for record in PartialPayment.query.order_by(PartialPayment.id.asc()).limit(int(limit)).all():
        checked += 1
        report = _audit_account(UnitOfWork(payment_id=int(record.id)), partial_payment_service.verify_ledger, record, "partial")
        if not report["ok"]:
            drift.append(report)
    return {"ok": not drift, "checked": checked, "drift_count": len(drift), "drift": drift}


# Reads

def get_escrow(actor: Actor, escrow_id) -> EscrowAccount:
    try:
        account = db.session.get(EscrowAccount, int(escrow_id))
    except (TypeError, ValueError):
        account = None
    if account is None:
        raise NotFound("Escrow payment not found", escrow_id=escrow_id)
    _require_party_or_admin(actor, account)
    return account


def _scoped(model, actor: Actor, role: str | None = None):
    query = model.query
    if actor.is_admin and not role:
        return query
    role = role or actor.role
    if role == ActorRole.STORE:
        return query.filter(model.store_id == actor.id)
    return query.filter(model.customer_id == actor.id)


def list_payments(actor: Actor, *, role: str | None = None) -> dict:
    if role and role not in (ActorRole.CUSTOMER, ActorRole.STORE):
        raise ValidationFailed("role must be customer or store", field="role")
    partial = _scoped(PartialPayment, actor, role).order_by(PartialPayment.created_at.desc()).all()
    escrow = _scoped(EscrowAccount, actor, role).order_by(EscrowAccount.created_at.desc()).all()
    return {
        "partial_payments": [p.to_dict() for p in partial],
        "escrow_payments": [e.to_dict() for e in escrow],
    }


def payment_stats(actor: Actor, *, role: str | None = None) -> dict:
    partial_q = _scoped(PartialPayment, actor, role)
    escrow_q = _scoped(EscrowAccount, actor, role)

    def _sum(query, status):
        value = query.filter(EscrowAccount.status == status).with_entities(func.sum(EscrowAccount.amount)).scalar()
        return float(quantize(value or ZERO))

    return {
        "total_partial_payments": partial_q.count(),
        "total_escrow_payments": escrow_q.count(),
        "total_held_amount": _sum(escrow_q, EscrowStatus.HELD),
        "total_released_amount": _sum(escrow_q, EscrowStatus.RELEASED),
        "total_disputed_amount": _sum(escrow_q, EscrowStatus.DISPUTED),
        "pending_payments": partial_q.filter(PartialPayment.status.in_(tuple(PartialPaymentStatus.OPEN))).count(),
        "disputed_payments": escrow_q.filter(EscrowAccount.status == EscrowStatus.DISPUTED).count(),
    }


def payment_history(actor: Actor, order_id: str) -> list[dict]:
    if not actor.is_admin:
        owned = (
            _scoped(EscrowAccount, actor).filter(EscrowAccount.order_id == order_id).first()
            or _scoped(PartialPayment, actor).filter(PartialPayment.order_id == order_id).first()
        )
        if owned is None:
            raise NotFound("No payments for this order", order_id=order_id)
    return [e.to_dict() for e in ledger_service.replay(order_id)]


def list_disputes(actor: Actor, *, status: str | None = None, priority: str | None = None) -> list[DisputeCase]:
    query = DisputeCase.query
    if not actor.is_admin:
        column = DisputeCase.store_id if actor.role == ActorRole.STORE else DisputeCase.customer_id
        query = query.filter(column == actor.id)
    if status:
        query = query.filter(
            DisputeCase.status == dispute_service.normalize_choice(status, DisputeStatus.ALL, field="status")
        )
    if priority:
        query = query.filter(
            DisputeCase.priority
            == dispute_service.normalize_choice(priority, dispute_service.DisputePriority.ALL, field="priority")
        )
    return query.order_by(DisputeCase.created_at.desc(), DisputeCase.id.desc()).all()


def get_dispute(actor: Actor, dispute_id) -> DisputeCase:
    case = dispute_service.get_case(dispute_id)
    _require_party_or_admin(actor, case)
    return case


def dispute_stats(actor: Actor) -> dict:
    if actor.is_admin:
        return dispute_service.stats()
    if actor.role == ActorRole.STORE:
        return dispute_service.stats(store_id=actor.id)
    return dispute_service.stats(customer_id=actor.id)
