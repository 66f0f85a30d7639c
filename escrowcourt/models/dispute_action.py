from datetime import datetime
import json

from escrowcourt.extensions import db


class DisputeAction(db.Model):
    __tablename__ = "dispute_actions"

    id = db.Column(db.Integer, primary_key=True)
    dispute_id = db.Column(db.Integer, db.ForeignKey("disputes.id"), nullable=False, index=True)
    # created | updated | evidence_added | admin_assigned | status_changed | resolved | closed
    action_type = db.Column(db.String(24), nullable=False, index=True)
    performed_by = db.Column(db.String(64), nullable=False)
    performed_by_role = db.Column(db.String(16), nullable=False)
    description = db.Column(db.String(500), nullable=False, default="")
    metadata_json = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def metadata_dict(self) -> dict:
        raw = self.metadata_json
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
        except ValueError:
            return {"raw": str(raw)}
        return parsed if isinstance(parsed, dict) else {"raw": str(raw)}

    def to_dict(self):
        return {
            "id": int(self.id),
            "dispute_id": int(self.dispute_id),
            "action_type": self.action_type,
            "performed_by": self.performed_by,
            "performed_by_type": self.performed_by_role,
            "description": self.description or "",
            "metadata": self.metadata_dict(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
