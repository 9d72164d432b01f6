from flask import Blueprint, g, jsonify, request

from routes.auth import login_response
from security import two_factor
from security.errors import AuthenticationError, IntegrityViolation, ValidationError
from security.login_flow import verify_two_factor_challenge
from security.password import verify_password
from utils.audit import log_event
from utils.audit_events import EventType, TwoFactorPayload
from utils.auth_context import login_required
from utils.device import device_from_request

two_factor_bp = Blueprint("two_factor", __name__, url_prefix="/2fa")


def _code_from_body(data) -> str:
    code = data.get("code")
    if code is None:
        raise ValidationError("Verification code is required")
    return two_factor.normalize_totp_code(code)


@two_factor_bp.post("/setup")
@login_required
def setup():
    if two_factor.is_enabled(g.user.id):
        raise IntegrityViolation("Two-factor authentication is already enabled")

    result = two_factor.setup(g.user.id, g.user.email)
    log_event(EventType.TWO_FACTOR_SETUP_INITIATED, "Two-factor setup started", risk_level="medium")

    return jsonify(
        qr_code=result.qr_code_data_uri,
        otpauth_url=result.qr_payload,
        manual_entry_key=result.manual_entry_key,
        backup_codes=result.backup_codes,
        message="Scan the QR code, then confirm with a code to enable two-factor authentication",
    ), 200


@two_factor_bp.post("/enable")
@login_required
def enable():
    data = request.get_json(silent=True) or {}
    code = _code_from_body(data)

    if not two_factor.enable(g.user.id, code):
        log_event(
            EventType.TWO_FACTOR_ENABLE_FAILED,
            "Two-factor enable failed: invalid code",
            risk_level="medium",
            success=False,
        )
        return jsonify(error="Invalid verification code"), 400

    status = two_factor.status(g.user.id)
    log_event(
        EventType.TWO_FACTOR_ENABLED,
        "Two-factor authentication enabled",
        payload=TwoFactorPayload(backup_codes_remaining=status["backup_codes_remaining"]),
        risk_level="medium",
    )
    return jsonify(message="Two-factor authentication enabled", **status), 200


@two_factor_bp.post("/verify-login")
def verify_login():
    data = request.get_json(silent=True) or {}
    challenge_token = data.get("challenge_token")
    if not isinstance(challenge_token, str) or not challenge_token:
        raise ValidationError("challenge_token is required")
    code = _code_from_body(data)

    result = verify_two_factor_challenge(challenge_token, code, device_from_request())
    return login_response(result)


@two_factor_bp.post("/disable")
@login_required
def disable():
    data = request.get_json(silent=True) or {}
    password = data.get("password") or ""
    code = _code_from_body(data)

    if not two_factor.is_enabled(g.user.id):
        return jsonify(error="Two-factor authentication is not enabled"), 400

    if not verify_password(password, g.user.password_hash) or not two_factor.verify_login(g.user.id, code).success:
        log_event(EventType.TWO_FACTOR_LOGIN_FAILED, "Two-factor disable refused", risk_level="high", success=False)
        raise AuthenticationError()

    two_factor.disable(g.user.id)
    log_event(EventType.TWO_FACTOR_DISABLED, "Two-factor authentication disabled", risk_level="high")
    return jsonify(message="Two-factor authentication disabled"), 200


@two_factor_bp.post("/regenerate-codes")
@login_required
def regenerate_codes():
    data = request.get_json(silent=True) or {}
    code = _code_from_body(data)

    if not two_factor.is_enabled(g.user.id):
        return jsonify(error="Two-factor authentication is not enabled"), 400
    if not two_factor.is_totp_shape(code) or not two_factor.verify_login(g.user.id, code).success:
        raise AuthenticationError("Invalid verification code")

    codes = two_factor.regenerate_backup_codes(g.user.id)
    log_event(
        EventType.TWO_FACTOR_BACKUP_CODES_REGENERATED,
        "Backup codes regenerated",
        payload=TwoFactorPayload(backup_codes_remaining=len(codes)),
        risk_level="medium",
    )
    return jsonify(backup_codes=codes), 200


@two_factor_bp.get("/status")
@login_required
def status():
    return jsonify(two_factor.status(g.user.id)), 200
