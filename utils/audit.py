import json
import logging
from datetime import timedelta
from functools import wraps

from flask import current_app, g, has_request_context, request
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from models import db
from models.audit_log import AuditEvent
from security.errors import SecurityError
from utils.audit_events import ApiCallPayload, EventType, build_metadata, event_value
from utils.clock import utcnow

logger = logging.getLogger(__name__)
fallback_logger = logging.getLogger("sessionguard.audit.fallback")

_ERROR_LEVELS = {"high", "critical"}


def record_event(
    event_type,
    description: str,
    *,
    user_id=None,
    email=None,
    ip_address=None,
    user_agent=None,
    payload=None,
    risk_level="low",
    success=True,
):
    """
    Append one audit event. Never raises: when the database write fails the
    event goes to the fallback log and an `audit_write_failed` alert is sent.
    Returns the stored row, or None when it went to the fallback.
    """
    event_type = event_value(event_type)
    risk_level = event_value(risk_level)

    try:
        metadata = build_metadata(event_type, payload)
    except TypeError as e:
        logger.warning(f"Audit payload for {event_type} rejected: {e}")
        metadata = {"raw": repr(payload)}

    log = logger.error if risk_level in _ERROR_LEVELS else logger.info
    log(f"AUDIT {event_type} [{risk_level}] user={user_id} ip={ip_address}: {description}")

    row = AuditEvent(
        user_id=user_id,
        email=email,
        event_type=event_type,
        description=(description or "")[:500],
        ip_address=ip_address,
        user_agent=(user_agent or "")[:255] or None,
        metadata_json=json.dumps(metadata, default=str) if metadata else None,
        risk_level=risk_level,
        success=success,
        timestamp=utcnow(),
    )

    try:
        db.session.add(row)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        fallback_logger.error(json.dumps({
            "event_type": event_type,
            "description": description,
            "user_id": user_id,
            "email": email,
            "ip_address": ip_address,
            "risk_level": risk_level,
            "success": success,
            "metadata": metadata,
            "timestamp": utcnow().isoformat(),
        }, default=str))

        from utils.notifications import notify_critical
        notify_critical(
            EventType.AUDIT_WRITE_FAILED.value,
            f"Audit event {event_type} could not be persisted",
            {"error": str(e), "event_type": event_type},
        )
        return None

    if risk_level == "critical" and event_type != EventType.AUDIT_WRITE_FAILED.value:
        from utils.notifications import notify_critical
        notify_critical(event_type, description, {"user_id": user_id, "ip_address": ip_address, **(metadata or {})})

    return row


def log_event(event_type, description: str, *, user_id=None, email=None, payload=None, risk_level="low", success=True):
    """record_event with IP, user agent and user taken from the current request."""
    ip = user_agent = None
    if has_request_context():
        from utils.device import client_ip

        ip = client_ip()
        user_agent = request.headers.get("User-Agent", "")
        user = getattr(g, "user", None)
        if user is not None:
            if user_id is None:
                user_id = user.id
            if email is None:
                email = user.email

    return record_event(
        event_type,
        description,
        user_id=user_id,
        email=email,
        ip_address=ip,
        user_agent=user_agent,
        payload=payload,
        risk_level=risk_level,
        success=success,
    )


def audited(event_type, risk_level="low", record_start=False, description=None):
    """
    Usage: @audited(EventType.ADMIN_ACTION, risk_level="high")

    Records one event after the view returns (success follows the HTTP
    status). With record_start=True an `api_call` start event is written
    before the view runs.
    """
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            text = description or f"{request.method} {request.path}"
            if record_start:
                log_event(
                    EventType.API_CALL,
                    f"{text} started",
                    payload=ApiCallPayload(endpoint=request.path, method=request.method, phase="start"),
                )

            try:
                rv = fn(*args, **kwargs)
            except SecurityError as exc:
                log_event(
                    event_type,
                    f"{text} failed: {exc.message}",
                    payload={"endpoint": request.path, "method": request.method, "status_code": exc.status_code},
                    risk_level=risk_level,
                    success=False,
                )
                raise

            resp = current_app.make_response(rv)
            log_event(
                event_type,
                text,
                payload={"endpoint": request.path, "method": request.method, "status_code": resp.status_code},
                risk_level=risk_level,
                success=resp.status_code < 400,
            )
            return resp
        return wrapper
    return decorator


def recent_events(
    user_id=None,
    email=None,
    ip_address=None,
    event_type=None,
    risk_level=None,
    success=None,
    since=None,
    limit=100,
    offset=0,
):
    q = AuditEvent.query
    if user_id is not None:
        q = q.filter(AuditEvent.user_id == user_id)
    if email:
        q = q.filter(AuditEvent.email == email.strip().lower())
    if ip_address:
        q = q.filter(AuditEvent.ip_address == ip_address)
    if event_type:
        q = q.filter(AuditEvent.event_type == event_value(event_type))
    if risk_level:
        q = q.filter(AuditEvent.risk_level == event_value(risk_level))
    if success is not None:
        q = q.filter(AuditEvent.success.is_(success))
    if since is not None:
        q = q.filter(AuditEvent.timestamp >= since)
    return q.order_by(AuditEvent.timestamp.desc(), AuditEvent.id.desc()).offset(offset).limit(limit).all()


def security_summary(days: int = 7) -> dict:
    since = utcnow() - timedelta(days=days)
    base = AuditEvent.query.filter(AuditEvent.timestamp >= since)

    by_type = dict(
        db.session.query(AuditEvent.event_type, func.count(AuditEvent.id))
        .filter(AuditEvent.timestamp >= since)
        .group_by(AuditEvent.event_type)
        .all()
    )
    by_risk = dict(
        db.session.query(AuditEvent.risk_level, func.count(AuditEvent.id))
        .filter(AuditEvent.timestamp >= since)
        .group_by(AuditEvent.risk_level)
        .all()
    )
    top_failed_ips = (
        db.session.query(AuditEvent.ip_address, func.count(AuditEvent.id).label("n"))
        .filter(
            AuditEvent.timestamp >= since,
            AuditEvent.event_type == EventType.LOGIN_FAILED.value,
            AuditEvent.ip_address.isnot(None),
        )
        .group_by(AuditEvent.ip_address)
        .order_by(func.count(AuditEvent.id).desc())
        .limit(10)
        .all()
    )

    return {
        "days": days,
        "total_events": base.count(),
        "failed_logins": by_type.get(EventType.LOGIN_FAILED.value, 0),
        "suspicious_logins": by_type.get(EventType.SUSPICIOUS_LOGIN.value, 0),
        "critical_events": by_risk.get("critical", 0),
        "events_by_type": by_type,
        "events_by_risk": by_risk,
        "top_failed_ips": [{"ip_address": ip, "count": n} for ip, n in top_failed_ips],
    }
