from models.db import db
from utils.clock import utcnow

class AuditEvent(db.Model):
    __tablename__ = "audit_events"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, nullable=True, index=True)  # nullable for unauth events
    email = db.Column(db.String(255), nullable=True, index=True)
    event_type = db.Column(db.String(80), nullable=False, index=True)  # e.g. login_failed, ip_banned
    description = db.Column(db.String(500), nullable=False)

    ip_address = db.Column(db.String(64), nullable=True, index=True)
    user_agent = db.Column(db.String(255), nullable=True)
    metadata_json = db.Column(db.Text, nullable=True)

    risk_level = db.Column(db.String(16), nullable=False, default="low")  # low|medium|high|critical
    success = db.Column(db.Boolean, nullable=False, default=True)

    timestamp = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "user_id": self.user_id,
            "email": self.email,
            "event_type": self.event_type,
            "description": self.description,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "metadata": self.metadata_json,
            "risk_level": self.risk_level,
            "success": self.success,
        }
