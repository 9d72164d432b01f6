"""
Audit event vocabulary and typed metadata payloads.

Each event family has a payload dataclass; `build_metadata` turns it into the
JSON stored on the AuditEvent row. Event types without a registered payload
accept a plain dict.
"""
from dataclasses import asdict, dataclass, field, fields, is_dataclass
from enum import Enum
from typing import List, Optional


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class EventType(str, Enum):
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    LOGOUT = "logout"
    ACCOUNT_LOCKED = "account_locked"
    SUSPICIOUS_LOGIN = "suspicious_login"
    BANNED_IP_ATTEMPT = "banned_ip_attempt"
    SUSPENDED_USER_LOGIN = "suspended_user_login"

    TWO_FACTOR_SETUP_INITIATED = "2fa_setup_initiated"
    TWO_FACTOR_ENABLED = "2fa_enabled"
    TWO_FACTOR_ENABLE_FAILED = "2fa_enable_failed"
    TWO_FACTOR_DISABLED = "2fa_disabled"
    TWO_FACTOR_BACKUP_CODES_REGENERATED = "2fa_backup_codes_regenerated"
    TWO_FACTOR_LOGIN_SUCCESS = "2fa_login_success"
    TWO_FACTOR_LOGIN_FAILED = "2fa_login_failed"

    SESSION_CREATED = "session_created"
    SESSION_INVALIDATED = "session_invalidated"
    SESSIONS_BULK_INVALIDATED = "sessions_bulk_invalidated"
    SESSION_TOKEN_REUSE = "session_token_reuse"

    IP_BANNED = "ip_banned"
    IP_UNBANNED = "ip_unbanned"
    USER_SUSPENDED = "user_suspended"
    USER_ACTIVATED = "user_activated"
    ADMIN_ACTION = "admin_action"
    ADMIN_SESSION_INVALIDATED = "admin_session_invalidated"
    ADMIN_BULK_SESSION_INVALIDATION = "admin_bulk_session_invalidation"

    SESSION_CLEANUP_COMPLETED = "session_cleanup_completed"
    CLEANUP_STEP_FAILED = "cleanup_step_failed"
    DETECTOR_RULE_FAILED = "detector_rule_failed"
    AUDIT_WRITE_FAILED = "audit_write_failed"
    API_CALL = "api_call"


@dataclass
class LoginPayload:
    session_id: Optional[str] = None
    risk_score: Optional[int] = None
    location: Optional[str] = None
    device_fingerprint: Optional[str] = None
    two_factor: bool = False
    activities: List[dict] = field(default_factory=list)


@dataclass
class LoginFailedPayload:
    reason: str = "invalid_credentials"
    attempts_left: Optional[int] = None
    remaining_lock_minutes: Optional[int] = None


@dataclass
class TwoFactorPayload:
    used_backup_code: bool = False
    backup_codes_remaining: Optional[int] = None
    attempts: Optional[int] = None


@dataclass
class SessionPayload:
    session_id: Optional[str] = None
    reason: Optional[str] = None
    count: Optional[int] = None
    target_user_id: Optional[int] = None
    reasons: List[str] = field(default_factory=list)


@dataclass
class IpBanPayload:
    ip_address: str = ""
    reason: Optional[str] = None
    duration_hours: Optional[float] = None


@dataclass
class UserModerationPayload:
    target_user_id: Optional[int] = None
    reason: Optional[str] = None
    sessions_invalidated: int = 0


@dataclass
class CleanupSummaryPayload:
    expired: int = 0
    inactive: int = 0
    checked: int = 0
    invalidated: int = 0
    bans_expired: int = 0
    users_affected: int = 0
    failed_steps: List[str] = field(default_factory=list)
    duration_ms: int = 0


@dataclass
class ApiCallPayload:
    endpoint: str = ""
    method: str = ""
    phase: str = "complete"
    status_code: Optional[int] = None


PAYLOAD_TYPES = {
    EventType.LOGIN_SUCCESS: LoginPayload,
    EventType.SUSPICIOUS_LOGIN: LoginPayload,
    EventType.SESSION_CREATED: LoginPayload,
    EventType.LOGIN_FAILED: LoginFailedPayload,
    EventType.ACCOUNT_LOCKED: LoginFailedPayload,
    EventType.TWO_FACTOR_ENABLED: TwoFactorPayload,
    EventType.TWO_FACTOR_ENABLE_FAILED: TwoFactorPayload,
    EventType.TWO_FACTOR_BACKUP_CODES_REGENERATED: TwoFactorPayload,
    EventType.TWO_FACTOR_LOGIN_SUCCESS: TwoFactorPayload,
    EventType.TWO_FACTOR_LOGIN_FAILED: TwoFactorPayload,
    EventType.SESSION_INVALIDATED: SessionPayload,
    EventType.SESSIONS_BULK_INVALIDATED: SessionPayload,
    EventType.SESSION_TOKEN_REUSE: SessionPayload,
    EventType.ADMIN_SESSION_INVALIDATED: SessionPayload,
    EventType.ADMIN_BULK_SESSION_INVALIDATION: SessionPayload,
    EventType.BANNED_IP_ATTEMPT: IpBanPayload,
    EventType.IP_BANNED: IpBanPayload,
    EventType.IP_UNBANNED: IpBanPayload,
    EventType.USER_SUSPENDED: UserModerationPayload,
    EventType.USER_ACTIVATED: UserModerationPayload,
    EventType.SESSION_CLEANUP_COMPLETED: CleanupSummaryPayload,
    EventType.API_CALL: ApiCallPayload,
}


def event_value(event_type) -> str:
    return getattr(event_type, "value", event_type)


def build_metadata(event_type, payload) -> Optional[dict]:
    """
    Normalise `payload` to a JSON-ready dict.

    A dict given for an event type with a registered payload is coerced
    through that dataclass; keys the dataclass does not declare are kept
    as-is so nothing is lost.
    """
    if payload is None:
        return None
    if is_dataclass(payload):
        return asdict(payload)

    data = dict(payload)
    try:
        payload_cls = PAYLOAD_TYPES.get(EventType(event_value(event_type)))
    except ValueError:
        payload_cls = None
    if payload_cls is None:
        return data

    known = {f.name for f in fields(payload_cls)}
    result = asdict(payload_cls(**{k: v for k, v in data.items() if k in known}))
    result.update({k: v for k, v in data.items() if k not in known})
    return result
