from __future__ import annotations

import json

from sqlalchemy import func

from escrowcourt.errors import (
    ConcurrentModification,
    DisputeClosed,
    DisputeNotInvestigating,
    EvidenceTooLarge,
    InvalidDisputeTransition,
    NotFound,
    ValidationFailed,
)
from escrowcourt.extensions import db
from escrowcourt.models import DisputeAction, DisputeCase, DisputeEvidence
from escrowcourt.services.actors import Actor
from escrowcourt.utils import clock

DEFAULT_EVIDENCE_MAX_BYTES = 10 * 1024 * 1024


class DisputeStatus:
    OPEN = "open"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    ESCALATED = "escalated"
    CLOSED = "closed"

    ALL = (OPEN, INVESTIGATING, RESOLVED, ESCALATED, CLOSED)
    INACTIVE = {RESOLVED, CLOSED}
    DECIDABLE = {OPEN, INVESTIGATING}
    # Open -> Resolved exists only through a decision, never through update_status.
    ALLOWED = {
        OPEN: {INVESTIGATING},
        INVESTIGATING: {RESOLVED, ESCALATED, CLOSED},
        # Escalated cases go back to an investigator before any ruling can be issued.
        ESCALATED: {INVESTIGATING, CLOSED},
        RESOLVED: {CLOSED},
        CLOSED: set(),
    }


class DisputeType:
    ALL = ("delivery", "quality", "service", "payment", "other")


class DisputePriority:
    ALL = ("low", "medium", "high", "urgent")
    DEFAULT = "medium"


class EvidenceType:
    ALL = ("image", "document", "video", "audio", "other")


class ActionType:
    CREATED = "created"
    UPDATED = "updated"
    EVIDENCE_ADDED = "evidence_added"
    ADMIN_ASSIGNED = "admin_assigned"
    STATUS_CHANGED = "status_changed"
    RESOLVED = "resolved"


def _clean(value) -> str:
    return "" if value is None else str(value).strip()


def normalize_choice(value, choices, *, field: str, default: str | None = None) -> str:
    raw = str(value or "").strip().lower()
    if not raw and default is not None:
        return default
    if raw not in choices:
        raise ValidationFailed(f"{field} must be one of: {', '.join(choices)}", field=field)
    return raw


def get_case(dispute_id) -> DisputeCase:
    try:
        case = db.session.get(DisputeCase, int(dispute_id))
    except (TypeError, ValueError):
        case = None
    if case is None:
        raise NotFound("Dispute not found", dispute_id=dispute_id)
    return case


def swap_case_status(case: DisputeCase, *, expected: str, target: str, **fields) -> DisputeCase:
    """Compare-and-set on (status, version); also used with target == expected to claim the row."""
    db.session.flush()
    values = {
        "status": target,
        "version": int(case.version) + 1,
        "updated_at": clock.utcnow(),
    }
    values.update(fields)
    updated = DisputeCase.query.filter(
        DisputeCase.id == int(case.id),
        DisputeCase.status == expected,
        DisputeCase.version == int(case.version),
    ).update(values, synchronize_session=False)
    if updated != 1:
        raise ConcurrentModification(
            f"dispute {int(case.id)} changed concurrently; expected status {expected}",
            dispute_id=int(case.id),
        )
    db.session.refresh(case)
    return case


def record_action(
    case: DisputeCase,
    action_type: str,
    *,
    actor: Actor,
    description: str = "",
    metadata: dict | None = None,
) -> DisputeAction:
    row = DisputeAction(
        dispute_id=int(case.id),
        action_type=action_type,
        performed_by=actor.id[:64],
        performed_by_role=actor.role[:16],
        description=(description or "")[:500],
        metadata_json=json.dumps(metadata or {}, default=str),
        created_at=clock.utcnow(),
    )
    db.session.add(row)
    db.session.flush()
    return row


def open_case(
    *,
    order_id: str,
    customer_id: str,
    store_id: str,
    actor: Actor,
    dispute_type: str,
    subject: str,
    description: str,
    priority: str | None = None,
    escrow_id: int | None = None,
    conversation_id: str | None = None,
) -> DisputeCase:
    subject = _clean(subject)
    description = _clean(description)
    if not subject:
        raise ValidationFailed("subject is required", field="subject")
    if not description:
        raise ValidationFailed("description is required", field="description")
    now = clock.utcnow()
    case = DisputeCase(
        order_id=order_id,
        escrow_id=int(escrow_id) if escrow_id is not None else None,
        active_escrow_key=int(escrow_id) if escrow_id is not None else None,
        conversation_id=_clean(conversation_id)[:64] or None,
        customer_id=customer_id,
        store_id=store_id,
        opened_by=actor.id[:64],
        opened_by_role=actor.role[:16],
        dispute_type=normalize_choice(dispute_type, DisputeType.ALL, field="dispute_type"),
        status=DisputeStatus.OPEN,
        priority=normalize_choice(priority, DisputePriority.ALL, field="priority", default=DisputePriority.DEFAULT),
        subject=subject[:200],
        description=description,
        created_at=now,
        updated_at=now,
    )
    db.session.add(case)
    db.session.flush()
    record_action(
        case,
        ActionType.CREATED,
        actor=actor,
        description=f"Dispute opened: {case.subject}",
        metadata={"dispute_type": case.dispute_type, "priority": case.priority, "escrow_id": case.escrow_id},
    )
    return case


def add_evidence(
    case: DisputeCase,
    *,
    actor: Actor,
    evidence_type: str,
    file_url: str,
    file_name: str,
    file_size,
    file_type: str | None = None,
    description: str | None = None,
    checksum: str | None = None,
    max_bytes: int = DEFAULT_EVIDENCE_MAX_BYTES,
) -> DisputeEvidence:
    if case.status == DisputeStatus.CLOSED:
        raise DisputeClosed("evidence cannot be added to a closed dispute", dispute_id=int(case.id))
    kind = normalize_choice(evidence_type, EvidenceType.ALL, field="evidence_type")
    name = _clean(file_name)
    if not name:
        raise ValidationFailed("file_name is required", field="file_name")
    try:
        size = int(file_size)
    except (TypeError, ValueError):
        raise ValidationFailed("file_size must be an integer", field="file_size")
    if size < 0:
        raise ValidationFailed("file_size must not be negative", field="file_size")
    if size > int(max_bytes):
        raise EvidenceTooLarge(
            f"file_size {size} exceeds the {int(max_bytes)} byte limit", dispute_id=int(case.id)
        )
    now = clock.utcnow()
    swap_case_status(case, expected=case.status, target=case.status, updated_at=now)
    evidence = DisputeEvidence(
        dispute_id=int(case.id),
        uploaded_by=actor.id[:64],
        uploaded_by_role=actor.role[:16],
        evidence_type=kind,
        file_url=file_url,
        file_name=name[:255],
        file_size=size,
        file_type=_clean(file_type)[:120] or None,
        checksum=_clean(checksum)[:128] or None,
        description=_clean(description) or None,
        is_verified=False,
        created_at=now,
    )
    db.session.add(evidence)
    db.session.flush()
    record_action(
        case,
        ActionType.EVIDENCE_ADDED,
        actor=actor,
        description=f"Evidence added: {evidence.file_name}",
        metadata={"evidence_id": int(evidence.id), "evidence_type": kind, "file_size": size},
    )
    return evidence


def verify_evidence(case: DisputeCase, evidence_id, *, admin: Actor) -> DisputeEvidence:
    evidence = None
    try:
        evidence = db.session.get(DisputeEvidence, int(evidence_id))
    except (TypeError, ValueError):
        evidence = None
    if evidence is None or int(evidence.dispute_id) != int(case.id):
        raise NotFound("Evidence not found", dispute_id=int(case.id), evidence_id=evidence_id)
    if evidence.is_verified:
        return evidence
    now = clock.utcnow()
    swap_case_status(case, expected=case.status, target=case.status, updated_at=now)
    evidence.is_verified = True
    evidence.verified_by = admin.id
    evidence.verified_at = now
    db.session.flush()
    record_action(
        case,
        ActionType.UPDATED,
        actor=admin,
        description=f"Evidence verified: {evidence.file_name}",
        metadata={"evidence_id": int(evidence.id)},
    )
    return evidence


def assign_admin(case: DisputeCase, admin_id: str, *, actor: Actor) -> DisputeCase:
    admin_id = _clean(admin_id)[:64]
    if not admin_id:
        raise ValidationFailed("admin_id is required", field="admin_id")
    previous_status = case.status
    if previous_status not in (DisputeStatus.OPEN, DisputeStatus.INVESTIGATING):
        raise DisputeNotInvestigating(
            f"cannot assign an admin while the dispute is {previous_status}", dispute_id=int(case.id)
        )
    previous_admin = case.assigned_admin_id
    swap_case_status(
        case,
        expected=previous_status,
        target=DisputeStatus.INVESTIGATING,
        assigned_admin_id=admin_id,
    )
    record_action(
        case,
        ActionType.ADMIN_ASSIGNED,
        actor=actor,
        description=f"Assigned to admin {admin_id}",
        metadata={"previous_admin_id": previous_admin, "from_status": previous_status, "to_status": case.status},
    )
    return case


def change_status(
    case: DisputeCase,
    new_status: str,
    *,
    actor: Actor,
    admin_notes: str | None = None,
    action_type: str = ActionType.STATUS_CHANGED,
) -> DisputeCase:
    """Move the case along its transition map and stamp the timestamps that go with it."""
    target = normalize_choice(new_status, DisputeStatus.ALL, field="status")
    current = case.status
    if current == DisputeStatus.CLOSED:
        raise DisputeClosed("dispute is closed", dispute_id=int(case.id))
    allowed = DisputeStatus.ALLOWED.get(current, set())
    if action_type == ActionType.RESOLVED and current in DisputeStatus.DECIDABLE:
        allowed = allowed | {DisputeStatus.RESOLVED}
    if target not in allowed:
        raise InvalidDisputeTransition(
            f"dispute cannot move from {current} to {target}", dispute_id=int(case.id)
        )
    notes = _clean(admin_notes)
    now = clock.utcnow()
    fields = {"updated_at": now}
    if notes:
        fields["admin_notes"] = notes
    if target == DisputeStatus.RESOLVED:
        fields["resolved_at"] = now
    if target == DisputeStatus.CLOSED:
        fields["closed_at"] = now
    if target in DisputeStatus.INACTIVE:
        fields["active_escrow_key"] = None
    swap_case_status(case, expected=current, target=target, **fields)
    record_action(
        case,
        action_type,
        actor=actor,
        description=f"Status changed from {current} to {target}",
        metadata={"from_status": current, "to_status": target, "admin_notes": notes or None},
    )
    return case


def stats(*, customer_id: str | None = None, store_id: str | None = None) -> dict:
    query = db.session.query(DisputeCase.status, DisputeCase.priority, func.count(DisputeCase.id))
    if customer_id is not None:
        query = query.filter(DisputeCase.customer_id == customer_id)
    if store_id is not None:
        query = query.filter(DisputeCase.store_id == store_id)
    by_status = {s: 0 for s in DisputeStatus.ALL}
    by_priority = {p: 0 for p in DisputePriority.ALL}
    total = 0
    for status, priority, count in query.group_by(DisputeCase.status, DisputeCase.priority).all():
        by_status[status] = by_status.get(status, 0) + int(count)
        by_priority[priority] = by_priority.get(priority, 0) + int(count)
        total += int(count)
    return {
        "total": total,
        "open": by_status[DisputeStatus.OPEN],
        "investigating": by_status[DisputeStatus.INVESTIGATING],
        "resolved": by_status[DisputeStatus.RESOLVED],
        "escalated": by_status[DisputeStatus.ESCALATED],
        "closed": by_status[DisputeStatus.CLOSED],
        "urgent": by_priority["urgent"],
        "high_priority": by_priority["high"],
        "by_status": by_status,
        "by_priority": by_priority,
    }
