from datetime import datetime

from escrowcourt.extensions import db
from escrowcourt.utils.money import as_float


class DisputeCase(db.Model):
    __tablename__ = "disputes"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(64), nullable=False, index=True)
    escrow_id = db.Column(db.Integer, db.ForeignKey("escrow_accounts.id"), nullable=True, index=True)
    # Mirrors escrow_id while the case is open; cleared on Resolved/Closed.
    # The unique constraint is what limits an escrow to one live dispute.
    active_escrow_key = db.Column(db.Integer, nullable=True, unique=True)
    conversation_id = db.Column(db.String(64), nullable=True, index=True)

    customer_id = db.Column(db.String(64), nullable=False, index=True)
    store_id = db.Column(db.String(64), nullable=False, index=True)
    opened_by = db.Column(db.String(64), nullable=False)
    opened_by_role = db.Column(db.String(16), nullable=False)

    dispute_type = db.Column(db.String(16), nullable=False, default="other")  # delivery | quality | service | payment | other
    status = db.Column(db.String(16), nullable=False, default="open", index=True)  # open | investigating | resolved | escalated | closed
    priority = db.Column(db.String(16), nullable=False, default="medium", index=True)  # low | medium | high | urgent
    subject = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=False)

    admin_notes = db.Column(db.Text, nullable=True)
    resolution = db.Column(db.Text, nullable=True)
    resolution_type = db.Column(db.String(24), nullable=True)  # refund | partial_refund | no_action
    refund_amount = db.Column(db.Numeric(14, 2), nullable=True)
    assigned_admin_id = db.Column(db.String(64), nullable=True, index=True)
    # Bumped by every status write; see dispute_service.swap_case_status.
    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    resolved_at = db.Column(db.DateTime, nullable=True)
    closed_at = db.Column(db.DateTime, nullable=True)

    escrow = db.relationship("EscrowAccount")
    evidence = db.relationship(
        "DisputeEvidence", backref="dispute", lazy="selectin", order_by="DisputeEvidence.id"
    )
    actions = db.relationship(
        "DisputeAction", backref="dispute", lazy="selectin", order_by="DisputeAction.id"
    )
    decision = db.relationship("ArbitrationDecision", backref="dispute", uselist=False, lazy="selectin")

    def to_dict(self, *, detail: bool = False):
        out = {
            "id": int(self.id),
            "order_id": self.order_id,
            "escrow_payment_id": int(self.escrow_id) if self.escrow_id is not None else None,
            "conversation_id": self.conversation_id,
            "customer_id": self.customer_id,
            "store_id": self.store_id,
            "opened_by": self.opened_by,
            "opened_by_role": self.opened_by_role,
            "dispute_type": self.dispute_type,
            "status": self.status,
            "priority": self.priority,
            "subject": self.subject,
            "description": self.description,
            "admin_notes": self.admin_notes,
            "resolution": self.resolution,
            "resolution_type": self.resolution_type,
            "refund_amount": as_float(self.refund_amount) if self.refund_amount is not None else None,
            "assigned_admin_id": self.assigned_admin_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
        }
        if detail:
            out["escrow_payment"] = self.escrow.to_dict() if self.escrow is not None else None
            out["evidence"] = [e.to_dict() for e in self.evidence]
            out["actions"] = [a.to_dict() for a in self.actions]
            out["decision"] = self.decision.to_dict() if self.decision is not None else None
        return out
