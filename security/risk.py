"""
Session risk scoring.

Weights are a starting calibration; thresholds for the buckets come from
config so deployments can tune them without code changes.
"""
from typing import Iterable, List, Sequence

from flask import current_app, has_app_context

SEVERITY_WEIGHTS = {"high": 40, "medium": 20, "low": 5}
MANY_SESSIONS_PENALTY = 15
MANY_LOCATIONS_PENALTY = 15
MAX_ACTIVE_SESSIONS = 10
MAX_DISTINCT_LOCATIONS = 3

_LEVEL_ORDER = ["low", "medium", "high", "critical"]


def _severity(activity) -> str:
    severity = getattr(activity, "severity", activity)
    return getattr(severity, "value", severity)


def _known_locations(sessions: Iterable) -> set:
    return {s.location for s in sessions if s.location and s.location != "Unknown"}


def compute_risk_score(activities: Sequence, active_sessions: Sequence = ()) -> int:
    """
    0-100. Adding a finding never lowers the score.

    activities: SuspiciousActivity findings for the login being scored.
    active_sessions: the user's currently active sessions (any objects with
    a `location` attribute).
    """
    score = sum(SEVERITY_WEIGHTS.get(_severity(a), 0) for a in activities)

    if len(active_sessions) > MAX_ACTIVE_SESSIONS:
        score += MANY_SESSIONS_PENALTY
    if len(_known_locations(active_sessions)) > MAX_DISTINCT_LOCATIONS:
        score += MANY_LOCATIONS_PENALTY

    return min(score, 100)


def _thresholds():
    if has_app_context():
        cfg = current_app.config
        return (
            cfg.get("RISK_MEDIUM_THRESHOLD", 40),
            cfg.get("RISK_HIGH_THRESHOLD", 70),
            cfg.get("RISK_CRITICAL_THRESHOLD", 90),
        )
    return 40, 70, 90


def risk_bucket(score: int) -> str:
    medium, high, critical = _thresholds()
    if score >= critical:
        return "critical"
    if score >= high:
        return "high"
    if score >= medium:
        return "medium"
    return "low"


def max_level(levels: Iterable[str]) -> str:
    best = "low"
    for level in levels:
        if level in _LEVEL_ORDER and _LEVEL_ORDER.index(level) > _LEVEL_ORDER.index(best):
            best = level
    return best


def audit_risk_level(activities: Sequence) -> str:
    """Risk level recorded on the login audit event."""
    if not activities:
        return "low"
    level = max_level(_severity(a) for a in activities)
    if len(activities) >= 2:
        level = max_level([level, "high"])
    return level


def session_warnings(active_sessions: Sequence) -> List[str]:
    medium, high, critical = _thresholds()
    warnings = []

    if len(active_sessions) > MAX_ACTIVE_SESSIONS:
        warnings.append(f"More than {MAX_ACTIVE_SESSIONS} active sessions")

    locations = _known_locations(active_sessions)
    if len(locations) > MAX_DISTINCT_LOCATIONS:
        warnings.append(f"Sessions from more than {MAX_DISTINCT_LOCATIONS} locations")

    risky = [s for s in active_sessions if (s.risk_score or 0) >= high]
    if risky:
        warnings.append(f"{len(risky)} high-risk session(s) active")

    suspicious = [s for s in active_sessions if s.is_suspicious]
    if suspicious:
        warnings.append(f"{len(suspicious)} session(s) flagged as suspicious")

    return warnings
