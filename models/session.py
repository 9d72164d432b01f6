import uuid

from models.db import db
from utils.clock import utcnow


def _new_session_id() -> str:
    return str(uuid.uuid4())


class UserSession(db.Model):
    __tablename__ = "user_sessions"

    id = db.Column(db.String(36), primary_key=True, default=_new_session_id)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    # store only hashed token in DB (never store raw token)
    token_hash = db.Column(db.String(128), unique=True, nullable=False, index=True)

    device_fingerprint = db.Column(db.String(64), nullable=False, index=True)
    ip_address = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(255), nullable=True)
    browser = db.Column(db.String(64), nullable=True)
    os = db.Column(db.String(64), nullable=True)
    device_name = db.Column(db.String(64), nullable=True)

    # coarse geo, best effort
    location = db.Column(db.String(255), nullable=False, default="Unknown")
    country = db.Column(db.String(64), nullable=True)
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    last_activity = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)
    expires_at = db.Column(db.DateTime, nullable=False)

    # risk at login; per-request signals are added on top of it
    baseline_risk_score = db.Column(db.Integer, default=0, nullable=False)
    risk_score = db.Column(db.Integer, default=0, nullable=False)
    is_suspicious = db.Column(db.Boolean, default=False, nullable=False)

    # is_active=False is terminal
    is_active = db.Column(db.Boolean, default=True, nullable=False, index=True)
    invalidated_at = db.Column(db.DateTime, nullable=True)
    invalidation_reason = db.Column(db.String(255), nullable=True)

    user = db.relationship("User", backref=db.backref("sessions", lazy="dynamic"))

    def to_dict(self, current_session_id=None) -> dict:
        return {
            "id": self.id,
            "device_name": self.device_name,
            "browser": self.browser,
            "os": self.os,
            "location": self.location,
            "ip_address": self.ip_address,
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "is_suspicious": self.is_suspicious,
            "risk_score": self.risk_score,
            "is_current": self.id == current_session_id,
            # only a prefix of the fingerprint leaves the server
            "device_fingerprint": (self.device_fingerprint or "")[:8] + "...",
        }
