from datetime import datetime

from escrowcourt.extensions import db
from escrowcourt.utils.money import as_float


class EscrowAccount(db.Model):
    __tablename__ = "escrow_accounts"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(64), nullable=False, unique=True, index=True)
    customer_id = db.Column(db.String(64), nullable=False, index=True)
    store_id = db.Column(db.String(64), nullable=False, index=True)

    amount = db.Column(db.Numeric(14, 2), nullable=False)
    payment_method = db.Column(db.String(32), nullable=True)
    status = db.Column(db.String(16), nullable=False, default="held", index=True)  # held | released | disputed | refunded
    transaction_id = db.Column(db.String(64), nullable=False, unique=True)
    release_conditions = db.Column(db.Text, nullable=True)

    paid_at = db.Column(db.DateTime, nullable=False)
    dispute_deadline = db.Column(db.DateTime, nullable=False, index=True)
    disputed_at = db.Column(db.DateTime, nullable=True)
    released_at = db.Column(db.DateTime, nullable=True)
    refunded_at = db.Column(db.DateTime, nullable=True)

    refunded_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    released_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    resolved_decision_id = db.Column(db.Integer, nullable=True)

    # Set when the ledger fold disagrees with `status`; blocks every further mutation.
    frozen = db.Column(db.Boolean, nullable=False, default=False)
    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "order_id": self.order_id,
            "customer_id": self.customer_id,
            "store_id": self.store_id,
            "amount": as_float(self.amount),
            "payment_method": self.payment_method or "",
            "escrow_status": self.status,
            "transaction_id": self.transaction_id,
            "release_conditions": self.release_conditions,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "dispute_deadline": self.dispute_deadline.isoformat() if self.dispute_deadline else None,
            "disputed_at": self.disputed_at.isoformat() if self.disputed_at else None,
            "released_at": self.released_at.isoformat() if self.released_at else None,
            "refunded_at": self.refunded_at.isoformat() if self.refunded_at else None,
            "refunded_amount": as_float(self.refunded_amount),
            "released_amount": as_float(self.released_amount),
            "resolved_decision_id": int(self.resolved_decision_id) if self.resolved_decision_id is not None else None,
            "frozen": bool(self.frozen),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
