from flask import Blueprint, current_app, g, jsonify, request

from security import two_factor
from security.csrf import clear_csrf_token, issue_csrf_token
from security.errors import ValidationError
from security.login_flow import authenticate, logout as end_session
from utils.auth_context import login_required
from utils.device import device_from_request

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


def _is_valid_email(email: str) -> bool:
    return isinstance(email, str) and "@" in email and len(email) <= 255


def _cookie_name() -> str:
    return current_app.config.get("AUTH_COOKIE_NAME", "sessionguard_session")


def login_response(result):
    """JSON body + session/CSRF cookies for a completed login."""
    sess = result.session
    resp = jsonify(
        message="Login OK",
        session_id=sess.id,
        risk_score=result.risk_score,
        suspicious_activities=[a.to_dict() for a in result.activities],
    )
    resp.set_cookie(
        _cookie_name(),
        sess.raw_token,
        httponly=True,
        secure=current_app.config.get("SESSION_COOKIE_SECURE", False),
        samesite=current_app.config.get("SESSION_COOKIE_SAMESITE", "Lax"),
        max_age=current_app.config.get("SESSION_LIFETIME_SECONDS", 86400),
        path="/",
    )
    return issue_csrf_token(resp), 200


@auth_bp.post("/login")
def login():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""

    if not _is_valid_email(email) or not isinstance(password, str) or not password:
        raise ValidationError("Email and password are required")

    result = authenticate(email, password, device_from_request())

    if result.two_factor_required:
        return jsonify(
            two_factor_required=True,
            challenge_token=result.challenge_token,
            message="Enter the code from your authenticator app",
        ), 200

    return login_response(result)


@auth_bp.get("/me")
@login_required
def me():
    return jsonify(
        id=g.user.id,
        email=g.user.email,
        roles=[r.name for r in g.user.roles],
        two_factor_enabled=two_factor.is_enabled(g.user.id),
        session=g.session.to_dict(current_session_id=g.session.id),
    ), 200


@auth_bp.post("/logout")
@login_required
def logout():
    end_session(g.session, device_from_request())

    resp = jsonify(message="Logged out")
    resp.delete_cookie(_cookie_name(), path="/")
    return clear_csrf_token(resp), 200
