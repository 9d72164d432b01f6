from flask import Blueprint, g, jsonify, request

from models import db
from models.session import UserSession
from models.user import User
from security.errors import ValidationError
from security.rbac import require_roles
from security.session import invalidate_all_sessions, invalidate_session
from utils.audit import audited, log_event, security_summary
from utils.audit_events import EventType, IpBanPayload, SessionPayload, UserModerationPayload
from utils.ip_bans import ban_ip, list_banned_ips, unban_ip

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")


def _require(data, name):
    value = data.get(name)
    if value in (None, ""):
        raise ValidationError(f"{name} is required")
    return value


def _get_user(data) -> User:
    try:
        user_id = int(_require(data, "user_id"))
    except (TypeError, ValueError):
        raise ValidationError("user_id must be an integer")
    return db.session.get(User, user_id)


def _ban_ip(data):
    ip = _require(data, "ip_address")
    duration = data.get("duration_hours")
    row = ban_ip(ip, reason=data.get("reason"), duration_hours=duration, banned_by=g.user.id)
    log_event(
        EventType.IP_BANNED,
        f"IP {row.ip_address} banned",
        payload=IpBanPayload(ip_address=row.ip_address, reason=row.reason, duration_hours=duration),
        risk_level="high",
    )
    return jsonify(message="IP banned", ban=row.to_dict()), 200


def _unban_ip(data):
    ip = _require(data, "ip_address")
    count = unban_ip(ip)
    if not count:
        return jsonify(error="IP is not banned"), 404
    log_event(EventType.IP_UNBANNED, f"IP {ip} unbanned", payload=IpBanPayload(ip_address=ip), risk_level="medium")
    return jsonify(message="IP unbanned"), 200


def _list_banned_ips(data):
    bans = list_banned_ips()
    return jsonify(banned_ips=[b.to_dict() for b in bans], total=len(bans)), 200


def _suspend_user(data):
    user = _get_user(data)
    if not user:
        return jsonify(error="User not found"), 404
    if user.id == g.user.id:
        return jsonify(error="You cannot suspend your own account"), 400

    reason = (data.get("reason") or "Suspended by administrator")[:255]
    user.is_suspended = True
    user.suspended_reason = reason
    db.session.commit()
    count = invalidate_all_sessions(user.id, "user_suspended")

    log_event(
        EventType.USER_SUSPENDED,
        f"User {user.email} suspended",
        payload=UserModerationPayload(target_user_id=user.id, reason=reason, sessions_invalidated=count),
        risk_level="high",
    )
    return jsonify(message="User suspended", sessions_invalidated=count), 200


def _activate_user(data):
    user = _get_user(data)
    if not user:
        return jsonify(error="User not found"), 404

    user.is_suspended = False
    user.suspended_reason = None
    db.session.commit()
    log_event(
        EventType.USER_ACTIVATED,
        f"User {user.email} reactivated",
        payload=UserModerationPayload(target_user_id=user.id),
        risk_level="medium",
    )
    return jsonify(message="User activated"), 200


def _invalidate_session(data):
    session_id = str(_require(data, "session_id"))
    sess = db.session.get(UserSession, session_id)
    if not sess:
        return jsonify(error="Session not found"), 404

    invalidated = invalidate_session(sess.id, "admin_invalidated")
    log_event(
        EventType.ADMIN_SESSION_INVALIDATED,
        f"Administrator invalidated session {sess.id}",
        payload=SessionPayload(session_id=sess.id, reason="admin_invalidated", target_user_id=sess.user_id),
        risk_level="high",
    )
    return jsonify(invalidated=invalidated), 200


def _invalidate_all_user_sessions(data):
    user = _get_user(data)
    if not user:
        return jsonify(error="User not found"), 404

    count = invalidate_all_sessions(user.id, "admin_invalidated_all")
    log_event(
        EventType.ADMIN_BULK_SESSION_INVALIDATION,
        f"Administrator invalidated all sessions of {user.email}",
        payload=SessionPayload(reason="admin_invalidated_all", count=count, target_user_id=user.id),
        risk_level="high",
    )
    return jsonify(invalidated=count), 200


ACTIONS = {
    "ban_ip": _ban_ip,
    "unban_ip": _unban_ip,
    "list_banned_ips": _list_banned_ips,
    "suspend_user": _suspend_user,
    "activate_user": _activate_user,
    "invalidate_session": _invalidate_session,
    "invalidate_all_user_sessions": _invalidate_all_user_sessions,
}


@admin_bp.post("/security-actions")
@require_roles("ADMIN")
@audited(EventType.ADMIN_ACTION, risk_level="high", record_start=True)
def security_actions():
    data = request.get_json(silent=True) or {}
    handler = ACTIONS.get(data.get("action"))
    if handler is None:
        raise ValidationError("Unknown action", allowed=sorted(ACTIONS))
    return handler(data)


@admin_bp.get("/security-summary")
@require_roles("ADMIN")
def get_security_summary():
    days = request.args.get("days", type=int) or 7
    days = max(1, min(days, 90))
    return jsonify(security_summary(days)), 200
