"""
TOTP two-factor authentication (RFC 6238) with single-use backup codes.

Compatible with Google Authenticator, Authy, Aegis:
- 6-digit codes, HMAC-SHA1, base32 secret
- 30-second step, one step of tolerance either side
- a step is accepted at most once per credential (replay protection)
"""
import base64
import hmac
import io
import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional

import pyotp
import qrcode
from flask import current_app
from sqlalchemy import or_, update

from models import db
from models.two_factor import TwoFactorCredential
from security.errors import IntegrityViolation, ValidationError
from security.vault import (
    decrypt_secret,
    encrypt_secret,
    find_backup_code,
    generate_backup_codes,
    hash_backup_codes,
    normalize_backup_code,
)
from utils.clock import utcnow

logger = logging.getLogger(__name__)


@dataclass
class TwoFactorSetup:
    secret: str
    qr_payload: str
    qr_code_data_uri: str
    backup_codes: List[str] = field(default_factory=list)
    manual_entry_key: str = ""


@dataclass
class VerificationResult:
    success: bool
    used_backup_code: bool = False
    backup_codes_remaining: int = 0


def _step() -> int:
    return current_app.config.get("TOTP_STEP_SECONDS", 30)


def _window() -> int:
    return current_app.config.get("TOTP_VALID_WINDOW", 1)


def _totp(secret: str) -> pyotp.TOTP:
    return pyotp.TOTP(secret, interval=_step())


def is_totp_shape(code: str) -> bool:
    return isinstance(code, str) and len(code) == 6 and code.isdigit()


def is_backup_code_shape(code: str) -> bool:
    normalized = normalize_backup_code(code)
    return len(normalized) == 8 and all(c in "0123456789ABCDEF" for c in normalized)


def normalize_totp_code(code) -> str:
    """
    Strip whitespace from a submitted code and reject anything that is
    neither a 6-digit TOTP nor an XXXX-XXXX backup code.
    """
    if not isinstance(code, str):
        raise ValidationError("Code must be a string")
    cleaned = code.strip().replace(" ", "")
    if is_totp_shape(cleaned) or is_backup_code_shape(cleaned):
        return cleaned
    raise ValidationError("Code must be 6 digits or a backup code")


def totp_code_at(secret: str, timestamp: float) -> str:
    """The code an authenticator app shows at `timestamp` (epoch seconds)."""
    return _totp(secret).generate_otp(int(timestamp // _step()))


def match_totp_step(secret: str, code: str, now: Optional[float] = None) -> Optional[int]:
    """
    Return the counter (step) `code` belongs to inside the tolerance
    window, or None when it matches no step.
    """
    if not secret or not is_totp_shape(code):
        return None

    now = time.time() if now is None else now
    totp = _totp(secret)
    current = int(now // _step())

    matched = None
    for offset in range(-_window(), _window() + 1):
        counter = current + offset
        if hmac.compare_digest(totp.generate_otp(counter), code) and matched is None:
            matched = counter
    return matched


def _claim_step(credential: TwoFactorCredential, step: int) -> bool:
    """
    Atomically record `step` as used. Fails when the same or a later step
    was already accepted, which is how a replayed code is refused.
    """
    result = db.session.execute(
        update(TwoFactorCredential)
        .where(TwoFactorCredential.id == credential.id)
        .where(
            or_(
                TwoFactorCredential.last_used_step.is_(None),
                TwoFactorCredential.last_used_step < step,
            )
        )
        .values(last_used_step=step, updated_at=utcnow())
    )
    return result.rowcount == 1


def _qr_data_uri(uri: str) -> str:
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=10,
        border=4,
    )
    qr.add_data(uri)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    img.save(buffer)
    b64 = base64.b64encode(buffer.getvalue()).decode("utf-8")
    return f"data:image/png;base64,{b64}"


def _get_credential(user_id: int) -> Optional[TwoFactorCredential]:
    return TwoFactorCredential.query.filter_by(user_id=user_id).first()


def setup(user_id: int, user_email: str) -> TwoFactorSetup:
    """
    Generate a fresh secret and backup codes and store them disabled.
    The plaintext values are returned exactly once.
    """
    secret = pyotp.random_base32()
    backup_codes = generate_backup_codes(current_app.config.get("BACKUP_CODE_COUNT", 8))

    credential = _get_credential(user_id)
    if credential is None:
        credential = TwoFactorCredential(user_id=user_id)
        db.session.add(credential)

    credential.secret_ciphertext = encrypt_secret(secret)
    credential.backup_code_hashes = hash_backup_codes(backup_codes)
    credential.enabled = False
    credential.verified_at = None
    credential.last_used_step = None
    db.session.commit()

    issuer = current_app.config.get("TOTP_ISSUER", "SessionGuard")
    uri = _totp(secret).provisioning_uri(name=user_email, issuer_name=issuer)

    return TwoFactorSetup(
        secret=secret,
        qr_payload=uri,
        qr_code_data_uri=_qr_data_uri(uri),
        backup_codes=backup_codes,
        manual_entry_key=" ".join(secret[i:i + 4] for i in range(0, len(secret), 4)),
    )


def _decrypted_secret(credential: TwoFactorCredential) -> Optional[str]:
    if not credential or not credential.secret_ciphertext:
        return None
    try:
        return decrypt_secret(credential.secret_ciphertext)
    except ValueError:
        logger.error(f"Stored TOTP secret for user {credential.user_id} could not be decrypted")
        return None


def enable(user_id: int, code: str, now: Optional[float] = None) -> bool:
    """Returns False for any failure; never reveals whether a credential exists."""
    credential = _get_credential(user_id)
    secret = _decrypted_secret(credential)
    if secret is None or not credential.backup_code_hashes:
        return False

    step = match_totp_step(secret, (code or "").strip().replace(" ", ""), now=now)
    if step is None or not _claim_step(credential, step):
        db.session.rollback()
        return False

    credential.enabled = True
    credential.verified_at = utcnow()
    db.session.commit()
    logger.info(f"Two-factor enabled for user {user_id}")
    return True


def verify_login(user_id: int, code: str, now: Optional[float] = None) -> VerificationResult:
    credential = _get_credential(user_id)
    if not credential or not credential.enabled:
        return VerificationResult(success=False)

    code = (code or "").strip().replace(" ", "")
    secret = _decrypted_secret(credential)

    if secret is not None and is_totp_shape(code):
        step = match_totp_step(secret, code, now=now)
        if step is not None:
            if _claim_step(credential, step):
                db.session.commit()
                return VerificationResult(
                    success=True,
                    backup_codes_remaining=credential.backup_codes_remaining,
                )
            db.session.rollback()
            logger.warning(f"Replayed TOTP step rejected for user {user_id}")
            return VerificationResult(success=False, backup_codes_remaining=credential.backup_codes_remaining)

    if not is_backup_code_shape(code):
        return VerificationResult(success=False, backup_codes_remaining=credential.backup_codes_remaining)

    # lock the row so two requests cannot spend the same backup code
    locked = (
        TwoFactorCredential.query
        .filter_by(id=credential.id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    hashes = list(locked.backup_code_hashes or [])
    index = find_backup_code(code, hashes)
    if index is None:
        db.session.rollback()
        return VerificationResult(success=False, backup_codes_remaining=len(hashes))

    del hashes[index]
    locked.backup_code_hashes = hashes
    db.session.commit()
    logger.info(f"Backup code consumed for user {user_id}, {len(hashes)} remaining")
    return VerificationResult(success=True, used_backup_code=True, backup_codes_remaining=len(hashes))


def disable(user_id: int) -> None:
    credential = _get_credential(user_id)
    if credential is None:
        return
    credential.secret_ciphertext = None
    credential.backup_code_hashes = []
    credential.enabled = False
    credential.verified_at = None
    credential.last_used_step = None
    db.session.commit()
    logger.info(f"Two-factor disabled for user {user_id}")


def regenerate_backup_codes(user_id: int) -> List[str]:
    credential = _get_credential(user_id)
    if credential is None or not credential.secret_ciphertext:
        raise IntegrityViolation("Two-factor authentication is not set up")

    codes = generate_backup_codes(current_app.config.get("BACKUP_CODE_COUNT", 8))
    # one assignment + commit: old hashes stop working at the same instant
    credential.backup_code_hashes = hash_backup_codes(codes)
    db.session.commit()
    return codes


def status(user_id: int) -> dict:
    credential = _get_credential(user_id)
    return {
        "enabled": bool(credential and credential.enabled),
        "verified_at": credential.verified_at.isoformat() if credential and credential.verified_at else None,
        "backup_codes_remaining": credential.backup_codes_remaining if credential else 0,
    }


def is_enabled(user_id: int) -> bool:
    credential = _get_credential(user_id)
    return bool(credential and credential.enabled)
