from datetime import datetime

from escrowcourt.extensions import db
from escrowcourt.utils.money import as_float


class LedgerEntry(db.Model):
    """Append-only. Nothing in the codebase updates or deletes these rows."""

    __tablename__ = "ledger_entries"
    __table_args__ = (
        db.UniqueConstraint("account_type", "account_id", "sequence", name="uq_ledger_account_sequence"),
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(64), nullable=False, index=True)
    account_type = db.Column(db.String(16), nullable=False)  # escrow | partial
    account_id = db.Column(db.Integer, nullable=False)
    sequence = db.Column(db.Integer, nullable=False)

    payment_type = db.Column(db.String(16), nullable=False)  # partial | escrow | full
    amount = db.Column(db.Numeric(14, 2), nullable=False)
    action = db.Column(db.String(16), nullable=False)  # payment | release | refund | dispute
    resulting_status = db.Column(db.String(16), nullable=False)
    transaction_id = db.Column(db.String(64), nullable=True)
    decision_id = db.Column(db.Integer, nullable=True)
    notes = db.Column(db.String(500), nullable=True)

    actor_id = db.Column(db.String(64), nullable=True)
    actor_role = db.Column(db.String(16), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def to_dict(self):
        return {
            "id": int(self.id),
            "order_id": self.order_id,
            "account_type": self.account_type,
            "account_id": int(self.account_id),
            "sequence": int(self.sequence),
            "payment_type": self.payment_type,
            "amount": as_float(self.amount),
            "action": self.action,
            "status": self.resulting_status,
            "transaction_id": self.transaction_id,
            "decision_id": int(self.decision_id) if self.decision_id is not None else None,
            "notes": self.notes or "",
            "created_by": self.actor_id,
            "created_by_role": self.actor_role,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
