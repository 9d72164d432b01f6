import hmac
from functools import wraps

from flask import current_app, g, jsonify, request


def has_role(role_name: str) -> bool:
    user = getattr(g, "user", None)
    if not user:
        return False
    return user.has_role(role_name)


def require_roles(*role_names: str):
    """
    Usage: @require_roles("ADMIN")
    """
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            user = getattr(g, "user", None)
            if user is None:
                return jsonify(error="Authentication required"), 401

            user_roles = {r.name for r in user.roles}
            if not user_roles.intersection(set(role_names)):
                return jsonify(error="Forbidden"), 403

            return fn(*args, **kwargs)
        return wrapper
    return decorator


def require_system_token(fn):
    """
    Bearer-token guard for machine callers (cron, schedulers).
    Disabled entirely when SYSTEM_CLEANUP_TOKEN is not configured.
    """
    @wraps(fn)
    def wrapper(*args, **kwargs):
        expected = current_app.config.get("SYSTEM_CLEANUP_TOKEN")
        if not expected:
            return jsonify(error="System endpoint not configured"), 503

        header = request.headers.get("Authorization", "")
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
            return jsonify(error="Unauthorized"), 401

        return fn(*args, **kwargs)
    return wrapper
