from flask import Blueprint, g, jsonify

from models.session import UserSession
from security.session import (
    invalidate_other_sessions,
    invalidate_session,
    list_active_sessions,
    security_status,
)
from utils.audit import log_event
from utils.audit_events import EventType, SessionPayload
from utils.auth_context import login_required

sessions_bp = Blueprint("sessions", __name__, url_prefix="/sessions")


@sessions_bp.get("")
@login_required
def list_sessions():
    sessions = list_active_sessions(g.user.id)
    return jsonify(
        sessions=[s.to_dict(current_session_id=g.session.id) for s in sessions],
        total=len(sessions),
    ), 200


@sessions_bp.get("/security-status")
@login_required
def get_security_status():
    return jsonify(security_status(g.user.id)), 200


@sessions_bp.delete("/<session_id>")
@login_required
def revoke_session(session_id):
    sess = UserSession.query.filter_by(id=session_id, user_id=g.user.id).first()
    if not sess:
        return jsonify(error="Session not found"), 404
    if sess.id == g.session.id:
        return jsonify(error="Use /auth/logout to end the current session"), 400

    invalidated = invalidate_session(sess.id, "user_revoked")
    log_event(
        EventType.SESSION_INVALIDATED,
        "User revoked a session",
        payload=SessionPayload(session_id=sess.id, reason="user_revoked"),
        risk_level="medium",
    )
    return jsonify(invalidated=invalidated), 200


@sessions_bp.delete("")
@login_required
def revoke_other_sessions():
    count = invalidate_other_sessions(g.user.id, g.session.id, "user_revoked_all")
    log_event(
        EventType.SESSIONS_BULK_INVALIDATED,
        "User signed out all other sessions",
        payload=SessionPayload(reason="user_revoked_all", count=count),
        risk_level="medium",
    )
    return jsonify(invalidated=count), 200
