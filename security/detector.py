"""
Suspicious login detection.

Every rule looks at one attempt plus the user's recent session and audit
history and returns zero or more findings. Rules are independent: one rule
failing is logged and escalated, and the remaining rules still run.
"""
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

from flask import current_app

from models.session import UserSession
from utils.audit import recent_events
from utils.audit_events import EventType
from utils.clock import utcnow
from utils.device import DeviceInfo
from utils.geo import haversine_km
from utils.notifications import notify_critical

logger = logging.getLogger(__name__)

HISTORY_DAYS = 30
HISTORY_LIMIT = 50
KNOWN_DEVICE_SESSIONS = 20
MIN_TIME_SAMPLES = 5
TRAVEL_WINDOW_HOURS = 12
MAX_TRAVEL_SPEED_KMH = 900
MIN_TRAVEL_DISTANCE_KM = 100
COUNTRY_CHANGE_WINDOW_MINUTES = 60
VELOCITY_WINDOW_MINUTES = 60
MAX_IPS_PER_WINDOW = 3
STUFFING_EMAIL_WINDOW_MINUTES = 5
STUFFING_EMAIL_FAILURES = 3
STUFFING_IP_WINDOW_MINUTES = 15
STUFFING_IP_DISTINCT_EMAILS = 5


class ActivityType(str, Enum):
    NEW_DEVICE = "new_device"
    IMPOSSIBLE_TRAVEL = "impossible_travel"
    UNUSUAL_TIME = "unusual_time"
    HIGH_VELOCITY = "high_velocity"
    TOR_EXIT_NODE = "tor_exit_node"
    CREDENTIAL_STUFFING = "credential_stuffing_pattern"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class SuspiciousActivity:
    type: ActivityType
    severity: Severity
    description: str
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "description": self.description,
            "details": self.details,
        }


@dataclass
class LoginAttempt:
    user_id: int
    email: str
    device: DeviceInfo
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class _History:
    sessions: List[UserSession]


def _load_history(attempt: LoginAttempt) -> _History:
    since = attempt.timestamp - timedelta(days=HISTORY_DAYS)
    sessions = (
        UserSession.query
        .filter(UserSession.user_id == attempt.user_id, UserSession.created_at >= since)
        .order_by(UserSession.created_at.desc())
        .limit(HISTORY_LIMIT)
        .all()
    )
    return _History(sessions=sessions)


def check_new_device(attempt: LoginAttempt, history: _History) -> List[SuspiciousActivity]:
    if not history.sessions:
        return []

    known = {s.device_fingerprint for s in history.sessions[:KNOWN_DEVICE_SESSIONS]}
    device = attempt.device
    if device.fingerprint in known:
        return []

    return [SuspiciousActivity(
        ActivityType.NEW_DEVICE,
        Severity.MEDIUM,
        f"Login from a new device: {device.browser} on {device.os} ({device.device_name})",
        {"browser": device.browser, "os": device.os, "device_name": device.device_name, "ip_address": device.ip_address},
    )]


def _hour_of_day(ts: datetime) -> float:
    return ts.hour + ts.minute / 60.0


def _circular_stats(hours: List[float]):
    """Mean hour and standard deviation (in hours) on the 24h circle."""
    angles = [h * 2 * math.pi / 24 for h in hours]
    c = sum(math.cos(a) for a in angles) / len(angles)
    s = sum(math.sin(a) for a in angles) / len(angles)
    r = math.hypot(c, s)
    mean = (math.atan2(s, c) * 24 / (2 * math.pi)) % 24
    if r <= 1e-9:
        return mean, None
    std = math.sqrt(-2 * math.log(min(r, 1.0))) * 24 / (2 * math.pi)
    return mean, std


def _circular_distance(a: float, b: float) -> float:
    d = abs(a - b) % 24
    return min(d, 24 - d)


def check_unusual_time(attempt: LoginAttempt, history: _History) -> List[SuspiciousActivity]:
    hours = [_hour_of_day(s.created_at) for s in history.sessions]
    if len(hours) < MIN_TIME_SAMPLES:
        return []

    mean, std = _circular_stats(hours)
    if std is None:
        # logins spread evenly over the day, no usual time
        return []
    std = max(std, 1.0)

    current = _hour_of_day(attempt.timestamp)
    distance = _circular_distance(current, mean)
    if distance <= 2 * std:
        return []

    return [SuspiciousActivity(
        ActivityType.UNUSUAL_TIME,
        Severity.LOW,
        f"Login at an unusual time ({attempt.timestamp:%H:%M} UTC)",
        {"hour": round(current, 2), "usual_hour": round(mean, 2), "stddev_hours": round(std, 2)},
    )]


def check_impossible_travel(attempt: LoginAttempt, history: _History) -> List[SuspiciousActivity]:
    geo = attempt.device.geo
    if geo is None:
        return []

    since = attempt.timestamp - timedelta(hours=TRAVEL_WINDOW_HOURS)
    recent = [s for s in history.sessions if s.is_active and s.last_activity >= since]

    if geo.has_coordinates:
        for other in recent:
            if other.latitude is None or other.longitude is None:
                continue
            distance = haversine_km(other.latitude, other.longitude, geo.latitude, geo.longitude)
            if distance < MIN_TRAVEL_DISTANCE_KM:
                continue
            elapsed_hours = max((attempt.timestamp - other.last_activity).total_seconds() / 3600, 1 / 60)
            speed = distance / elapsed_hours
            if speed > MAX_TRAVEL_SPEED_KMH:
                return [SuspiciousActivity(
                    ActivityType.IMPOSSIBLE_TRAVEL,
                    Severity.HIGH,
                    f"Login from {geo.label} shortly after activity from {other.location}",
                    {
                        "from": other.location,
                        "to": geo.label,
                        "distance_km": round(distance),
                        "speed_kmh": round(speed),
                        "session_id": other.id,
                    },
                )]
        return []

    if not geo.country:
        return []
    window = attempt.timestamp - timedelta(minutes=COUNTRY_CHANGE_WINDOW_MINUTES)
    for other in recent:
        if other.country and other.country != geo.country and other.last_activity >= window:
            return [SuspiciousActivity(
                ActivityType.IMPOSSIBLE_TRAVEL,
                Severity.HIGH,
                f"Login from {geo.country} within an hour of activity from {other.country}",
                {"from": other.country, "to": geo.country, "session_id": other.id},
            )]
    return []


def check_high_velocity(attempt: LoginAttempt, history: _History) -> List[SuspiciousActivity]:
    since = attempt.timestamp - timedelta(minutes=VELOCITY_WINDOW_MINUTES)
    ips = {s.ip_address for s in history.sessions if s.created_at >= since and s.ip_address}
    ips.add(attempt.device.ip_address)
    if len(ips) <= MAX_IPS_PER_WINDOW:
        return []

    return [SuspiciousActivity(
        ActivityType.HIGH_VELOCITY,
        Severity.HIGH,
        f"Logins from {len(ips)} different IP addresses within an hour",
        {"ip_count": len(ips)},
    )]


def check_tor_exit_node(attempt: LoginAttempt, history: _History) -> List[SuspiciousActivity]:
    exit_nodes = set(current_app.config.get("TOR_EXIT_NODES") or [])
    if attempt.device.ip_address not in exit_nodes:
        return []
    return [SuspiciousActivity(
        ActivityType.TOR_EXIT_NODE,
        Severity.MEDIUM,
        "Login through a known Tor exit node",
        {"ip_address": attempt.device.ip_address},
    )]


def check_credential_stuffing(attempt: LoginAttempt, history: _History) -> List[SuspiciousActivity]:
    email_failures = recent_events(
        email=attempt.email,
        event_type=EventType.LOGIN_FAILED,
        since=attempt.timestamp - timedelta(minutes=STUFFING_EMAIL_WINDOW_MINUTES),
        limit=STUFFING_EMAIL_FAILURES,
    )
    if len(email_failures) >= STUFFING_EMAIL_FAILURES:
        return [SuspiciousActivity(
            ActivityType.CREDENTIAL_STUFFING,
            Severity.HIGH,
            f"{len(email_failures)}+ failed logins for this account in the last {STUFFING_EMAIL_WINDOW_MINUTES} minutes",
            {"failed_attempts": len(email_failures)},
        )]

    ip_failures = recent_events(
        ip_address=attempt.device.ip_address,
        event_type=EventType.LOGIN_FAILED,
        since=attempt.timestamp - timedelta(minutes=STUFFING_IP_WINDOW_MINUTES),
        limit=500,
    )
    emails = {e.email for e in ip_failures if e.email}
    if len(emails) >= STUFFING_IP_DISTINCT_EMAILS:
        return [SuspiciousActivity(
            ActivityType.CREDENTIAL_STUFFING,
            Severity.HIGH,
            f"Failed logins for {len(emails)} accounts from this IP address",
            {"distinct_emails": len(emails), "ip_address": attempt.device.ip_address},
        )]
    return []


RULES = [
    check_new_device,
    check_unusual_time,
    check_impossible_travel,
    check_high_velocity,
    check_tor_exit_node,
    check_credential_stuffing,
]


def analyze_login(attempt: LoginAttempt, history: Optional[_History] = None) -> List[SuspiciousActivity]:
    history = history or _load_history(attempt)
    findings: List[SuspiciousActivity] = []

    for rule in RULES:
        try:
            findings.extend(rule(attempt, history))
        except Exception as e:
            logger.exception(f"Detector rule {rule.__name__} failed for user {attempt.user_id}")
            notify_critical(
                EventType.DETECTOR_RULE_FAILED.value,
                f"Suspicious login rule {rule.__name__} failed",
                {"user_id": attempt.user_id, "error": str(e)},
            )

    if findings:
        logger.info(
            f"Login for user {attempt.user_id} flagged: {', '.join(f.type.value for f in findings)}"
        )
    return findings
