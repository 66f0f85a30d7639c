from datetime import datetime
import json

from escrowcourt.extensions import db


class DomainEvent(db.Model):
    """Outbox row. Written in the same transaction as the state change it announces."""

    __tablename__ = "domain_events"

    id = db.Column(db.Integer, primary_key=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    event_type = db.Column(db.String(80), nullable=False, index=True)
    actor_id = db.Column(db.String(64), nullable=True)
    subject_type = db.Column(db.String(40), nullable=True, index=True)
    subject_id = db.Column(db.String(64), nullable=True, index=True)
    recipients_json = db.Column(db.Text, nullable=True)

    request_id = db.Column(db.String(80), nullable=True)
    idempotency_key = db.Column(db.String(180), nullable=True, unique=True)
    severity = db.Column(db.String(16), nullable=False, default="INFO")
    metadata_json = db.Column(db.Text, nullable=True)

    delivery_status = db.Column(db.String(16), nullable=False, default="queued", index=True)  # queued | sent | failed | skipped
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.String(500), nullable=True)
    dispatched_at = db.Column(db.DateTime, nullable=True)

    def recipients(self) -> list[str]:
        try:
            parsed = json.loads(self.recipients_json or "[]")
        except ValueError:
            return []
        return [str(r) for r in parsed if r] if isinstance(parsed, list) else []

    def metadata_dict(self) -> dict:
        raw = self.metadata_json
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
        except ValueError:
            return {"raw": str(raw)}
        return parsed if isinstance(parsed, dict) else {"raw": str(raw)}

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "event_type": self.event_type or "",
            "actor_id": self.actor_id,
            "subject_type": self.subject_type or "",
            "subject_id": self.subject_id or "",
            "recipients": self.recipients(),
            "request_id": self.request_id or "",
            "severity": self.severity or "INFO",
            "metadata": self.metadata_dict(),
            "delivery_status": self.delivery_status,
            "attempts": int(self.attempts or 0),
            "last_error": self.last_error or "",
            "dispatched_at": self.dispatched_at.isoformat() if self.dispatched_at else None,
        }
