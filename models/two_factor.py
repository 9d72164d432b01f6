from models.db import db
from utils.clock import utcnow


class TwoFactorCredential(db.Model):
    __tablename__ = "two_factor_credentials"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), unique=True, nullable=False, index=True)

    # iv + AES-256-CBC ciphertext, base64 encoded (never the raw secret)
    secret_ciphertext = db.Column(db.Text, nullable=True)

    # ordered bcrypt hashes; a used code is removed from the list
    backup_code_hashes = db.Column(db.JSON, nullable=False, default=list)

    enabled = db.Column(db.Boolean, default=False, nullable=False)
    verified_at = db.Column(db.DateTime, nullable=True)

    # highest TOTP counter accepted so far (replay protection)
    last_used_step = db.Column(db.BigInteger, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    user = db.relationship("User", back_populates="two_factor")

    @property
    def backup_codes_remaining(self) -> int:
        return len(self.backup_code_hashes or [])
