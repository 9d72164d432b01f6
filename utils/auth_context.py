import logging
from functools import wraps

from flask import g, jsonify

from models import db
from models.user import User
from security.errors import IntegrityViolation
from security.session import get_session_from_request, validate_session
from utils.audit import log_event
from utils.audit_events import EventType, SessionPayload
from utils.device import device_from_request

logger = logging.getLogger(__name__)


def load_current_user():
    g.user = None
    g.session = None

    try:
        sess = get_session_from_request()
        if sess is not None:
            # re-scored against the device this request comes from
            sess = validate_session(sess, device_from_request())
    except IntegrityViolation as exc:
        # cookie of a session that was already invalidated
        log_event(
            EventType.SESSION_TOKEN_REUSE,
            "Request with an invalidated session token",
            payload=SessionPayload(session_id=exc.details.get("session_id"), reason="token_reuse"),
            risk_level="high",
            success=False,
        )
        return

    if not sess:
        return

    user = db.session.get(User, sess.user_id)
    if user is None or user.is_suspended:
        return
    g.session = sess
    g.user = user


def login_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if getattr(g, "user", None) is None:
            return jsonify(error="Authentication required"), 401
        return fn(*args, **kwargs)
    return wrapper
