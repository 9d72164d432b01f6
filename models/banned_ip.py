from models.db import db
from utils.clock import utcnow


class BannedIP(db.Model):
    __tablename__ = "banned_ips"

    id = db.Column(db.Integer, primary_key=True)
    ip_address = db.Column(db.String(64), nullable=False, index=True)
    reason = db.Column(db.String(255), nullable=True)
    banned_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    banned_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=True)  # null = permanent
    is_active = db.Column(db.Boolean, default=True, nullable=False, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ip_address": self.ip_address,
            "reason": self.reason,
            "banned_by": self.banned_by,
            "banned_at": self.banned_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "is_active": self.is_active,
        }
