from datetime import datetime

from escrowcourt.extensions import db


class DisputeEvidence(db.Model):
    __tablename__ = "dispute_evidence"

    id = db.Column(db.Integer, primary_key=True)
    dispute_id = db.Column(db.Integer, db.ForeignKey("disputes.id"), nullable=False, index=True)
    uploaded_by = db.Column(db.String(64), nullable=False)
    uploaded_by_role = db.Column(db.String(16), nullable=False)  # customer | store | admin

    evidence_type = db.Column(db.String(16), nullable=False)  # image | document | video | audio | other
    file_url = db.Column(db.String(1024), nullable=False)
    file_name = db.Column(db.String(255), nullable=False)
    file_size = db.Column(db.BigInteger, nullable=False)
    file_type = db.Column(db.String(120), nullable=True)
    checksum = db.Column(db.String(128), nullable=True)
    description = db.Column(db.Text, nullable=True)

    is_verified = db.Column(db.Boolean, nullable=False, default=False)
    verified_by = db.Column(db.String(64), nullable=True)
    verified_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "dispute_id": int(self.dispute_id),
            "uploaded_by": self.uploaded_by,
            "uploaded_by_type": self.uploaded_by_role,
            "evidence_type": self.evidence_type,
            "file_url": self.file_url,
            "file_name": self.file_name,
            "file_size": int(self.file_size or 0),
            "file_type": self.file_type or "",
            "checksum": self.checksum,
            "description": self.description,
            "is_verified": bool(self.is_verified),
            "verified_by": self.verified_by,
            "verified_at": self.verified_at.isoformat() if self.verified_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
