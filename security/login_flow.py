"""
Password login, optional two-factor step, and session creation.

Order of checks for a login:
    banned IP -> throttle -> credentials -> suspended account
    -> two-factor challenge (if enabled)
    -> throttle reset -> suspicious login analysis -> session -> audit -> notification
"""
import json
import logging
import secrets
from dataclasses import dataclass, field
from typing import List, Optional

from flask import current_app

from models import db
from models.user import User
from security import two_factor
from security.detector import LoginAttempt, SuspiciousActivity, analyze_login
from security.errors import AccessDenied, AuthenticationError, LockoutError
from security.kvstore import get_store
from security.password import check_user_password
from security.risk import audit_risk_level
from security.session import create_session, invalidate_session, rescore_session
from security.throttle import get_login_throttle, normalize_identifier
from utils.audit import record_event
from utils.audit_events import (
    EventType,
    IpBanPayload,
    LoginFailedPayload,
    LoginPayload,
    SessionPayload,
    TwoFactorPayload,
)
from utils.clock import utcnow
from utils.device import DeviceInfo
from utils.ip_bans import is_ip_banned
from utils.notifications import notify_suspicious_login

logger = logging.getLogger(__name__)

CHALLENGE_PREFIX = "2fa:challenge:"
CHALLENGE_ATTEMPTS_PREFIX = "2fa:attempts:"


@dataclass
class LoginResult:
    user: User
    session: Optional[object] = None
    two_factor_required: bool = False
    challenge_token: Optional[str] = None
    activities: List[SuspiciousActivity] = field(default_factory=list)
    risk_score: int = 0


def _audit(event_type, description, device: DeviceInfo, **kwargs):
    return record_event(
        event_type,
        description,
        ip_address=device.ip_address,
        user_agent=device.user_agent,
        **kwargs,
    )


def authenticate(email: str, password: str, device: DeviceInfo, now=None) -> LoginResult:
    email = normalize_identifier(email)

    if is_ip_banned(device.ip_address):
        _audit(
            EventType.BANNED_IP_ATTEMPT,
            f"Login attempt from banned IP {device.ip_address}",
            device,
            email=email,
            payload=IpBanPayload(ip_address=device.ip_address),
            risk_level="critical",
            success=False,
        )
        raise AccessDenied("Access denied")

    throttle = get_login_throttle()
    status = throttle.check(email)
    if not status.allowed:
        _audit(
            EventType.ACCOUNT_LOCKED,
            "Login attempt while account is locked",
            device,
            email=email,
            payload=LoginFailedPayload(reason="locked", remaining_lock_minutes=status.remaining_lock_minutes),
            risk_level="high",
            success=False,
        )
        raise LockoutError(status.remaining_lock_minutes)

    user = User.query.filter_by(email=email).first()
    if not check_user_password(user, password):
        status = throttle.record_failure(email)
        failures = throttle.max_attempts - (status.attempts_left or 0)
        _audit(
            EventType.LOGIN_FAILED,
            "Failed login attempt",
            device,
            user_id=user.id if user else None,
            email=email,
            payload=LoginFailedPayload(
                attempts_left=status.attempts_left,
                remaining_lock_minutes=status.remaining_lock_minutes,
            ),
            risk_level="high" if failures >= 3 else "medium",
            success=False,
        )
        if not status.allowed:
            _audit(
                EventType.ACCOUNT_LOCKED,
                "Too many failed attempts, account locked",
                device,
                user_id=user.id if user else None,
                email=email,
                payload=LoginFailedPayload(reason="locked", remaining_lock_minutes=status.remaining_lock_minutes),
                risk_level="high",
                success=False,
            )
            raise LockoutError(status.remaining_lock_minutes)
        raise AuthenticationError()

    if user.is_suspended:
        _audit(
            EventType.SUSPENDED_USER_LOGIN,
            "Login attempt on suspended account",
            device,
            user_id=user.id,
            email=email,
            risk_level="medium",
            success=False,
        )
        raise AccessDenied("Account suspended")

    if two_factor.is_enabled(user.id):
        return LoginResult(user=user, two_factor_required=True, challenge_token=_issue_challenge(user))

    return complete_login(user, device, now=now)


def _issue_challenge(user: User) -> str:
    token = secrets.token_urlsafe(32)
    ttl = current_app.config.get("TWO_FACTOR_CHALLENGE_TTL_SECONDS", 300)
    get_store().set(f"{CHALLENGE_PREFIX}{token}", json.dumps({"user_id": user.id}), ttl)
    return token


def verify_two_factor_challenge(challenge_token: str, code: str, device: DeviceInfo) -> LoginResult:
    """
    Second login step. The challenge allows a limited number of wrong codes
    and is consumed by the first correct one.
    """
    store = get_store()
    key = f"{CHALLENGE_PREFIX}{challenge_token or ''}"
    raw = store.get(key) if challenge_token else None
    if raw is None:
        raise AuthenticationError("Two-factor challenge expired or invalid")

    user = db.session.get(User, json.loads(raw)["user_id"])
    if user is None or user.is_suspended:
        store.delete(key)
        raise AuthenticationError("Two-factor challenge expired or invalid")

    throttle = get_login_throttle()
    status = throttle.check(user.email)
    if not status.allowed:
        store.delete(key, f"{CHALLENGE_ATTEMPTS_PREFIX}{challenge_token}")
        raise LockoutError(status.remaining_lock_minutes)

    result = two_factor.verify_login(user.id, code)
    if not result.success:
        # wrong second factors count toward the same lockout as wrong passwords
        status = throttle.record_failure(user.email)
        if not status.allowed:
            store.delete(key, f"{CHALLENGE_ATTEMPTS_PREFIX}{challenge_token}")
            _audit(
                EventType.ACCOUNT_LOCKED,
                "Too many invalid two-factor codes, account locked",
                device,
                user_id=user.id,
                email=user.email,
                payload=LoginFailedPayload(
                    reason="two_factor_locked",
                    remaining_lock_minutes=status.remaining_lock_minutes,
                ),
                risk_level="high",
                success=False,
            )
            raise LockoutError(status.remaining_lock_minutes)

        ttl = current_app.config.get("TWO_FACTOR_CHALLENGE_TTL_SECONDS", 300)
        attempts = store.incr(f"{CHALLENGE_ATTEMPTS_PREFIX}{challenge_token}", ttl)
        max_attempts = current_app.config.get("TWO_FACTOR_MAX_ATTEMPTS", 3)
        exhausted = attempts >= max_attempts

        _audit(
            EventType.TWO_FACTOR_LOGIN_FAILED,
            "Invalid two-factor code",
            device,
            user_id=user.id,
            email=user.email,
            payload=TwoFactorPayload(attempts=attempts, backup_codes_remaining=result.backup_codes_remaining),
            risk_level="high" if exhausted else "medium",
            success=False,
        )
        if exhausted:
            store.delete(key, f"{CHALLENGE_ATTEMPTS_PREFIX}{challenge_token}")
            raise AuthenticationError("Too many invalid codes. Sign in again.")
        raise AuthenticationError("Invalid verification code")

    store.delete(key, f"{CHALLENGE_ATTEMPTS_PREFIX}{challenge_token}")
    _audit(
        EventType.TWO_FACTOR_LOGIN_SUCCESS,
        "Backup code used for login" if result.used_backup_code else "Two-factor code accepted",
        device,
        user_id=user.id,
        email=user.email,
        payload=TwoFactorPayload(
            used_backup_code=result.used_backup_code,
            backup_codes_remaining=result.backup_codes_remaining,
        ),
        risk_level="medium" if result.used_backup_code else "low",
    )
    return complete_login(user, device, two_factor_used=True)


def complete_login(user: User, device: DeviceInfo, now=None, two_factor_used: bool = False) -> LoginResult:
    now = now or utcnow()
    # the failure counter resets only once every factor has passed
    get_login_throttle().record_success(user.email)

    activities = analyze_login(LoginAttempt(user_id=user.id, email=user.email, device=device, timestamp=now))
    sess = create_session(user.id, device, now=now)
    score = rescore_session(sess, activities)
    level = audit_risk_level(activities)

    payload = LoginPayload(
        session_id=sess.id,
        risk_score=score,
        location=device.location,
        device_fingerprint=device.fingerprint[:8],
        two_factor=two_factor_used,
        activities=[a.to_dict() for a in activities],
    )
    _audit(
        EventType.LOGIN_SUCCESS,
        "User logged in",
        device,
        user_id=user.id,
        email=user.email,
        payload=payload,
        risk_level=level,
    )
    if activities:
        _audit(
            EventType.SUSPICIOUS_LOGIN,
            f"Suspicious login: {', '.join(a.type.value for a in activities)}",
            device,
            user_id=user.id,
            email=user.email,
            payload=payload,
            risk_level=level,
        )
        notify_suspicious_login(user.email, activities, device.ip_address, device.location)

    return LoginResult(user=user, session=sess, activities=activities, risk_score=score)


def logout(sess, device: DeviceInfo) -> bool:
    changed = invalidate_session(sess.id, "logout")
    _audit(
        EventType.LOGOUT,
        "User logged out",
        device,
        user_id=sess.user_id,
        payload=SessionPayload(session_id=sess.id, reason="logout"),
    )
    return changed
