"""
Double-submit CSRF protection for cookie-authenticated requests.

Login hands out a random token in a JS-readable cookie; every state-changing
request from a signed-in browser must echo it back in a header.
"""
import hmac
import logging
import secrets

from flask import current_app, g, jsonify, request

logger = logging.getLogger(__name__)

UNSAFE_METHODS = ("POST", "PUT", "PATCH", "DELETE")

# reachable without a session, or authenticated by other means
EXEMPT_PATHS = {
    "/auth/login",
    "/2fa/verify-login",
    "/health",
    "/system/session-cleanup",
}


def csrf_cookie_name() -> str:
    return current_app.config.get("CSRF_COOKIE_NAME", "sessionguard_csrf")


def csrf_header_name() -> str:
    return current_app.config.get("CSRF_HEADER_NAME", "X-CSRF-Token")


def issue_csrf_token(resp):
    """Attach a fresh token to `resp`; a new login always rotates it."""
    resp.set_cookie(
        csrf_cookie_name(),
        secrets.token_urlsafe(32),
        httponly=False,  # must be readable by client JS
        secure=current_app.config.get("SESSION_COOKIE_SECURE", False),
        samesite=current_app.config.get("SESSION_COOKIE_SAMESITE", "Lax"),
        path="/",
    )
    return resp


def clear_csrf_token(resp):
    resp.delete_cookie(csrf_cookie_name(), path="/")
    return resp


def require_csrf():
    """Returns an error response, or None when the header matches the cookie."""
    cookie_token = request.cookies.get(csrf_cookie_name()) or ""
    header_token = request.headers.get(csrf_header_name()) or ""
    if cookie_token and header_token and hmac.compare_digest(cookie_token.encode("utf-8"), header_token.encode("utf-8")):
        return None

    logger.warning(f"CSRF check failed for {request.method} {request.path}")
    return jsonify(error="CSRF validation failed"), 403


def csrf_protect():
    """before_request hook; runs after the current user is loaded."""
    if request.method not in UNSAFE_METHODS or request.path in EXEMPT_PATHS:
        return None
    # anonymous requests carry no ambient credentials to forge
    if getattr(g, "user", None) is None:
        return None
    return require_csrf()
