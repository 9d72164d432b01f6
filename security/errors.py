import logging

from flask import jsonify

logger = logging.getLogger(__name__)


class SecurityError(Exception):
    status_code = 500
    public_message = "Security check failed"

    def __init__(self, message: str = None, **details):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message
        self.details = details

    def to_response(self):
        body = {"error": self.message}
        body.update(self.details)
        return jsonify(body), self.status_code


class AuthenticationError(SecurityError):
    """Bad password or 2FA code. Never says which part was wrong."""
    status_code = 401
    public_message = "Invalid credentials"


class LockoutError(SecurityError):
    status_code = 429
    public_message = "Account temporarily locked. Try again later."

    def __init__(self, remaining_lock_minutes: int, message: str = None):
        super().__init__(message, remaining_lock_minutes=remaining_lock_minutes)
        self.remaining_lock_minutes = remaining_lock_minutes


class AccessDenied(SecurityError):
    status_code = 403
    public_message = "Access denied"


class ValidationError(SecurityError):
    status_code = 400
    public_message = "Invalid request"


class DependencyFailure(SecurityError):
    status_code = 503
    public_message = "A required service is unavailable"


class IntegrityViolation(SecurityError):
    status_code = 409
    public_message = "Operation not permitted"


def register_error_handlers(app):
    @app.errorhandler(SecurityError)
    def _handle_security_error(exc: SecurityError):
        if exc.status_code >= 500:
            logger.error(f"{type(exc).__name__}: {exc.message}")
        return exc.to_response()
