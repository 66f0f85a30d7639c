from datetime import datetime

from escrowcourt.extensions import db
from escrowcourt.utils.money import as_float


class ArbitrationDecision(db.Model):
    __tablename__ = "dispute_decisions"

    id = db.Column(db.Integer, primary_key=True)
    dispute_id = db.Column(db.Integer, db.ForeignKey("disputes.id"), nullable=False, unique=True)
    admin_id = db.Column(db.String(64), nullable=False)

    # customer_wins | store_wins | partial_customer | partial_store | no_fault
    decision_type = db.Column(db.String(24), nullable=False)
    decision_reason = db.Column(db.Text, nullable=False)
    customer_penalty = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    store_penalty = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    refund_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    additional_notes = db.Column(db.Text, nullable=True)

    is_final = db.Column(db.Boolean, nullable=False, default=False)
    finalized_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "dispute_id": int(self.dispute_id),
            "admin_id": self.admin_id,
            "decision_type": self.decision_type,
            "decision_reason": self.decision_reason,
            "customer_penalty": as_float(self.customer_penalty),
            "store_penalty": as_float(self.store_penalty),
            "refund_amount": as_float(self.refund_amount),
            "additional_notes": self.additional_notes,
            "is_final": bool(self.is_final),
            "finalized_at": self.finalized_at.isoformat() if self.finalized_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
