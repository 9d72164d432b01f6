"""
Outbound security notifications. Every function here is best effort:
failures are logged and reported through the return value, never raised.
"""
import json
import logging

from flask import current_app

from utils import emailer
from utils.clock import utcnow

logger = logging.getLogger(__name__)


def _severity(activity) -> str:
    return getattr(activity.severity, "value", activity.severity)


def _kind(activity) -> str:
    return getattr(activity.type, "value", activity.type)


def notify_suspicious_login(email: str, activities, ip_address: str, location: str) -> bool:
    """Email the account owner when a login produced at least one high finding."""
    if not email or not any(_severity(a) == "high" for a in activities):
        return False

    lines = [f"- {a.description}" for a in activities]
    body = (
        "We noticed a sign-in to your account that looks unusual.\n\n"
        f"Time (UTC): {utcnow():%Y-%m-%d %H:%M}\n"
        f"IP address: {ip_address}\n"
        f"Location: {location or 'Unknown'}\n\n"
        "What we detected:\n"
        + "\n".join(lines)
        + "\n\nIf this was you, no action is needed. If not, sign out all other "
        "sessions and change your password right away."
    )

    ok, err = emailer.send_email(email, "Security alert: unusual sign-in detected", body)
    if not ok:
        logger.warning(f"Suspicious login notification to {email} failed: {err}")
    else:
        logger.info(f"Suspicious login notification sent to {email} ({', '.join(_kind(a) for a in activities)})")
    return ok


def notify_critical(event_type: str, description: str, metadata=None) -> bool:
    """
    Alert operators about a critical event. Without ADMIN_ALERT_EMAIL the
    alert only goes to the log at CRITICAL level.
    """
    details = json.dumps(metadata or {}, default=str, indent=2)
    logger.critical(f"CRITICAL SECURITY EVENT {event_type}: {description}")

    to_email = current_app.config.get("ADMIN_ALERT_EMAIL")
    if not to_email:
        return False

    body = (
        f"Event: {event_type}\n"
        f"Time (UTC): {utcnow().isoformat()}\n"
        f"Description: {description}\n\n"
        f"Details:\n{details}\n"
    )
    ok, err = emailer.send_email(to_email, f"[SessionGuard] Critical: {event_type}", body)
    if not ok:
        logger.error(f"Critical alert email for {event_type} failed: {err}")
    return ok


def notify_session_invalidated(email: str, session, reasons) -> bool:
    if not email:
        return False

    body = (
        "One of your sessions was signed out automatically because it looked unsafe.\n\n"
        f"Device: {session.browser or 'Unknown'} on {session.os or 'Unknown'} ({session.device_name or 'Unknown'})\n"
        f"Location: {session.location or 'Unknown'}\n"
        f"IP address: {session.ip_address}\n"
        f"Reasons: {', '.join(reasons)}\n\n"
        "If you do not recognise this activity, change your password."
    )
    ok, err = emailer.send_email(email, "A session on your account was signed out", body)
    if not ok:
        logger.warning(f"Session invalidation notice to {email} failed: {err}")
    return ok
