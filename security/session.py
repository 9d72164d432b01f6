import hashlib
import logging
import secrets
from datetime import timedelta
from typing import List, Optional, Tuple

from flask import current_app, request
from sqlalchemy import update

from models import db
from models.session import UserSession
from models.user import User
from security.errors import IntegrityViolation
from security.risk import compute_risk_score, max_level, risk_bucket, session_warnings
from utils.audit import record_event
from utils.audit_events import EventType, SessionPayload
from utils.clock import utcnow
from utils.geo import haversine_km
from utils.notifications import notify_session_invalidated

logger = logging.getLogger(__name__)

SUSPICIOUS_ACTIVITY_REASON = "suspicious_activity"

# per-request signal weights
FINGERPRINT_MISMATCH_POINTS = 50
FAR_IP_CHANGE_POINTS = 30
NEAR_IP_CHANGE_POINTS = 10
IDLE_POINTS = 10
BUSY_ACCOUNT_POINTS = 20

FAR_IP_CHANGE_KM = 1000
NEAR_IP_CHANGE_KM = 100
IDLE_MINUTES = 120
BUSY_ACCOUNT_SESSIONS = 10
BUSY_ACCOUNT_WINDOW_HOURS = 24


def _hash_token(token: str) -> str:
    # SHA-256 is fine for hashing random session tokens
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def create_session(user_id: int, device, now=None) -> UserSession:
    """
    Insert a new session row for a successful login. A login never reuses
    an existing row.

    The RAW token (to set as cookie) is attached to the returned object as
    `raw_token` and is not persisted; only its hash is stored.
    """
    now = now or utcnow()
    raw_token = secrets.token_urlsafe(32)
    lifetime = current_app.config.get("SESSION_LIFETIME_SECONDS", 86400)
    geo = device.geo

    row = UserSession(
        user_id=user_id,
        token_hash=_hash_token(raw_token),
        device_fingerprint=device.fingerprint,
        ip_address=device.ip_address,
        user_agent=device.user_agent,
        browser=device.browser,
        os=device.os,
        device_name=device.device_name,
        location=device.location,
        country=geo.country if geo else None,
        latitude=geo.latitude if geo else None,
        longitude=geo.longitude if geo else None,
        created_at=now,
        last_activity=now,
        expires_at=now + timedelta(seconds=lifetime),
    )
    db.session.add(row)
    db.session.commit()

    row.raw_token = raw_token
    logger.info(f"Session {row.id} created for user {user_id} from {device.ip_address}")
    return row


def get_session_by_token(raw_token: str) -> Optional[UserSession]:
    if not raw_token:
        return None
    return UserSession.query.filter_by(token_hash=_hash_token(raw_token)).first()


def expire_session_if_needed(sess: UserSession, now=None) -> bool:
    """Invalidate `sess` when its absolute lifetime has passed."""
    now = now or utcnow()
    if sess.is_active and sess.expires_at <= now:
        invalidate_session(sess.id, "expired", now=now)
        return True
    return False


def get_session_from_request(now=None) -> Optional[UserSession]:
    """
    Resolve the session cookie to an active, unexpired session.

    Raises IntegrityViolation when the cookie belongs to a session that was
    already invalidated.
    """
    cookie_name = current_app.config.get("AUTH_COOKIE_NAME", "sessionguard_session")
    sess = get_session_by_token(request.cookies.get(cookie_name))
    if sess is None:
        return None

    if not sess.is_active:
        raise IntegrityViolation("Session has been invalidated", session_id=sess.id)

    now = now or utcnow()
    if expire_session_if_needed(sess, now=now):
        return None
    return sess


def touch_session(session_id: str, now=None) -> None:
    """
    Record activity on an active session. Only `last_activity` is written,
    so concurrent touches are last-write-wins and cannot clobber an
    invalidation.
    """
    result = db.session.execute(
        update(UserSession)
        .where(UserSession.id == session_id, UserSession.is_active.is_(True))
        .values(last_activity=now or utcnow())
    )
    db.session.commit()
    if result.rowcount == 0:
        raise IntegrityViolation("Session is no longer active", session_id=session_id)


def list_active_sessions(user_id: int) -> List[UserSession]:
    return (
        UserSession.query
        .filter_by(user_id=user_id, is_active=True)
        .order_by(UserSession.last_activity.desc())
        .all()
    )


def rescore_session(sess: UserSession, activities) -> int:
    """Recompute and persist risk for `sess` given this login's findings."""
    score = compute_risk_score(activities, list_active_sessions(sess.user_id))
    high = current_app.config.get("RISK_HIGH_THRESHOLD", 70)
    suspicious = score >= high or any(getattr(a.severity, "value", a.severity) == "high" for a in activities)

    db.session.execute(
        update(UserSession)
        .where(UserSession.id == sess.id)
        .values(risk_score=score, baseline_risk_score=score, is_suspicious=suspicious)
    )
    db.session.commit()

    sess.risk_score = score
    sess.baseline_risk_score = score
    sess.is_suspicious = suspicious
    return score


def _ip_change_points(sess: UserSession, device) -> Optional[Tuple[str, int]]:
    if device.ip_address == sess.ip_address:
        return None

    geo = device.geo
    if geo is not None and geo.has_coordinates and sess.latitude is not None and sess.longitude is not None:
        distance = haversine_km(sess.latitude, sess.longitude, geo.latitude, geo.longitude)
    elif geo is not None and geo.country and sess.country and geo.country != sess.country:
        distance = FAR_IP_CHANGE_KM + 1
    else:
        return None

    if distance > FAR_IP_CHANGE_KM:
        return "distant_ip_change", FAR_IP_CHANGE_POINTS
    if distance > NEAR_IP_CHANGE_KM:
        return "ip_change", NEAR_IP_CHANGE_POINTS
    return None


def request_risk_signals(sess: UserSession, device, now) -> List[Tuple[str, int]]:
    """Per-request signals against the device the session was created on."""
    signals = []

    if sess.device_fingerprint and device.fingerprint != sess.device_fingerprint:
        signals.append(("device_fingerprint_mismatch", FINGERPRINT_MISMATCH_POINTS))

    ip_change = _ip_change_points(sess, device)
    if ip_change:
        signals.append(ip_change)

    if now - sess.last_activity > timedelta(minutes=IDLE_MINUTES):
        signals.append(("long_inactivity", IDLE_POINTS))

    recent = (
        UserSession.query
        .filter(
            UserSession.user_id == sess.user_id,
            UserSession.created_at >= now - timedelta(hours=BUSY_ACCOUNT_WINDOW_HOURS),
        )
        .count()
    )
    if recent > BUSY_ACCOUNT_SESSIONS:
        signals.append(("unusual_session_activity", BUSY_ACCOUNT_POINTS))

    return signals


def validate_session(sess: UserSession, device, now=None) -> Optional[UserSession]:
    """
    Re-score an authenticated request and record activity.

    The score is the login-time baseline plus this request's signals, so it
    does not grow with every request. A critical score invalidates the
    session (reason `suspicious_activity`), tells the user, and returns None.
    """
    now = now or utcnow()
    signals = request_risk_signals(sess, device, now)
    names = [name for name, _ in signals]
    score = min(100, (sess.baseline_risk_score or 0) + sum(points for _, points in signals))

    if risk_bucket(score) == "critical":
        if invalidate_session(sess.id, SUSPICIOUS_ACTIVITY_REASON, now=now):
            _report_request_invalidation(sess, device, score, names)
        return None

    high = current_app.config.get("RISK_HIGH_THRESHOLD", 70)
    suspicious = bool(sess.is_suspicious or score >= high or "device_fingerprint_mismatch" in names)

    touch_session(sess.id, now=now)
    if score != sess.risk_score or suspicious != sess.is_suspicious:
        db.session.execute(
            update(UserSession)
            .where(UserSession.id == sess.id)
            .values(risk_score=score, is_suspicious=suspicious)
        )
        db.session.commit()
        if names:
            logger.warning(f"Session {sess.id} re-scored to {score}: {', '.join(names)}")

    sess.risk_score = score
    sess.is_suspicious = suspicious
    sess.last_activity = now
    return sess


def _report_request_invalidation(sess: UserSession, device, score: int, reasons: List[str]) -> None:
    user = db.session.get(User, sess.user_id)
    email = user.email if user else None
    logger.warning(f"Session {sess.id} invalidated at risk {score}: {', '.join(reasons)}")

    record_event(
        EventType.SESSION_INVALIDATED,
        f"Session invalidated during request validation: {', '.join(reasons)}",
        user_id=sess.user_id,
        email=email,
        ip_address=device.ip_address,
        user_agent=device.user_agent,
        payload=SessionPayload(session_id=sess.id, reason=SUSPICIOUS_ACTIVITY_REASON, reasons=reasons),
        risk_level="high",
        success=False,
    )
    if email:
        notify_session_invalidated(email, sess, reasons)


def invalidate_session(session_id: str, reason: str, now=None) -> bool:
    """
    Deactivate one session. Returns False (without error) when it was
    already inactive; the first invalidation's timestamp and reason are kept.
    """
    result = db.session.execute(
        update(UserSession)
        .where(UserSession.id == session_id, UserSession.is_active.is_(True))
        .values(is_active=False, invalidated_at=now or utcnow(), invalidation_reason=reason)
    )
    db.session.commit()
    changed = result.rowcount == 1
    if changed:
        logger.info(f"Session {session_id} invalidated: {reason}")
    return changed


def invalidate_other_sessions(user_id: int, except_session_id: Optional[str], reason: str, now=None) -> int:
    stmt = update(UserSession).where(
        UserSession.user_id == user_id,
        UserSession.is_active.is_(True),
    )
    if except_session_id:
        stmt = stmt.where(UserSession.id != except_session_id)

    result = db.session.execute(
        stmt.values(is_active=False, invalidated_at=now or utcnow(), invalidation_reason=reason)
    )
    db.session.commit()
    if result.rowcount:
        logger.info(f"Invalidated {result.rowcount} session(s) for user {user_id}: {reason}")
    return result.rowcount


def invalidate_all_sessions(user_id: int, reason: str, now=None) -> int:
    return invalidate_other_sessions(user_id, None, reason, now=now)


def security_status(user_id: int) -> dict:
    active = list_active_sessions(user_id)
    return {
        "risk_level": max_level(risk_bucket(s.risk_score or 0) for s in active),
        "warnings": session_warnings(active),
        "active_sessions": len(active),
    }
