from datetime import datetime

from escrowcourt.extensions import db
from escrowcourt.utils.money import as_float


class PartialPayment(db.Model):
    __tablename__ = "partial_payments"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(64), nullable=False, unique=True, index=True)
    customer_id = db.Column(db.String(64), nullable=False, index=True)
    store_id = db.Column(db.String(64), nullable=False, index=True)

    total_amount = db.Column(db.Numeric(14, 2), nullable=False)
    paid_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    remaining_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    percentage = db.Column(db.Numeric(5, 2), nullable=False)

    payment_method = db.Column(db.String(32), nullable=True)
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)  # pending | partial | completed | failed | refunded
    transaction_id = db.Column(db.String(64), nullable=False, unique=True)

    due_date = db.Column(db.DateTime, nullable=True)
    paid_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    refunded_at = db.Column(db.DateTime, nullable=True)

    version = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "order_id": self.order_id,
            "customer_id": self.customer_id,
            "store_id": self.store_id,
            "total_amount": as_float(self.total_amount),
            "paid_amount": as_float(self.paid_amount),
            "remaining_amount": as_float(self.remaining_amount),
            "payment_percentage": float(self.percentage or 0),
            "payment_method": self.payment_method or "",
            "payment_status": self.status,
            "transaction_id": self.transaction_id,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "refunded_at": self.refunded_at.isoformat() if self.refunded_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
