"""
Periodic session cleanup and automatic remediation.

Each step commits on its own and failures are isolated: a step that raises
is logged, escalated, and recorded in `failed_steps` while the remaining
steps still run. Invalidation is idempotent, so two overlapping runs (for
example two app instances) only ever invalidate a session once.
"""
import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Iterable, List, Optional, Set

from flask import current_app
from sqlalchemy import or_, update

from models import db
from models.session import UserSession
from models.user import User
from security.session import invalidate_session
from utils.audit import record_event
from utils.audit_events import CleanupSummaryPayload, EventType, SessionPayload
from utils.clock import utcnow
from utils.device import looks_like_bot
from utils.ip_bans import cleanup_expired_bans
from utils.notifications import notify_critical, notify_session_invalidated

logger = logging.getLogger(__name__)

AUTO_INVALIDATION_REASON = "automatic_security_invalidation"
DORMANT_HOURS = 48
CONFLICT_WINDOW_MINUTES = 30
MIN_REASONS_TO_INVALIDATE = 2


@dataclass
class CleanupStats:
    expired: int = 0
    inactive: int = 0
    checked: int = 0
    invalidated: int = 0
    bans_expired: int = 0
    users_affected: int = 0
    failed_steps: List[str] = field(default_factory=list)
    duration_ms: int = 0
    affected_user_ids: Set[int] = field(default_factory=set, repr=False)

    def mark_affected(self, user_ids: Iterable[int]) -> None:
        self.affected_user_ids.update(user_ids)
        self.users_affected = len(self.affected_user_ids)

    def to_dict(self) -> dict:
        data = asdict(self)
        data.pop("affected_user_ids")
        return data


def _expire_sessions(now, stats: CleanupStats):
    result = db.session.execute(
        update(UserSession)
        .where(UserSession.is_active.is_(True), UserSession.expires_at <= now)
        .values(is_active=False, invalidated_at=now, invalidation_reason="expired")
    )
    db.session.commit()
    stats.expired = result.rowcount


def _purge_inactive_sessions(now, stats: CleanupStats):
    days = current_app.config.get("SESSION_INACTIVITY_TTL_DAYS", 7)
    stale = (UserSession.is_active.is_(True), UserSession.last_activity < now - timedelta(days=days))
    user_ids = [row.user_id for row in db.session.query(UserSession.user_id).filter(*stale).distinct()]

    result = db.session.execute(
        update(UserSession)
        .where(*stale)
        .values(is_active=False, invalidated_at=now, invalidation_reason="long_inactivity_cleanup")
    )
    db.session.commit()
    stats.inactive = result.rowcount
    stats.mark_affected(user_ids)


def invalidation_reasons(sess: UserSession, others: List[UserSession], now) -> List[str]:
    """Why a flagged session looks unsafe right now."""
    reasons = []
    critical = current_app.config.get("RISK_CRITICAL_THRESHOLD", 90)

    if (sess.risk_score or 0) >= critical:
        reasons.append("high_risk_score")

    if sess.last_activity < now - timedelta(hours=DORMANT_HOURS):
        reasons.append("dormant_session")

    window = timedelta(minutes=CONFLICT_WINDOW_MINUTES)
    for other in others:
        if other.id == sess.id or other.user_id != sess.user_id:
            continue
        if "Unknown" in (other.location, sess.location) or other.location == sess.location:
            continue
        if abs(other.last_activity - sess.last_activity) <= window:
            reasons.append("conflicting_locations")
            break

    if looks_like_bot(sess.user_agent):
        reasons.append("bot_user_agent")

    return reasons


def _recheck_suspicious_sessions(now, stats: CleanupStats):
    threshold = current_app.config.get("CLEANUP_RESCORE_THRESHOLD", 80)
    force_score = current_app.config.get("CLEANUP_FORCE_INVALIDATE_SCORE", 95)

    flagged = (
        UserSession.query
        .filter(
            UserSession.is_active.is_(True),
            or_(UserSession.risk_score >= threshold, UserSession.is_suspicious.is_(True)),
        )
        .all()
    )
    stats.checked = len(flagged)

    user_ids = {s.user_id for s in flagged}
    siblings = (
        UserSession.query
        .filter(UserSession.is_active.is_(True), UserSession.user_id.in_(user_ids))
        .all()
        if user_ids else []
    )

    for sess in flagged:
        reasons = invalidation_reasons(sess, siblings, now)
        if len(reasons) < MIN_REASONS_TO_INVALIDATE and (sess.risk_score or 0) < force_score:
            continue

        if not invalidate_session(sess.id, AUTO_INVALIDATION_REASON, now=now):
            # already invalidated by a concurrent run or by the user
            continue
        stats.invalidated += 1
        stats.mark_affected([sess.user_id])

        user = db.session.get(User, sess.user_id)
        record_event(
            EventType.SESSION_INVALIDATED,
            f"Session automatically invalidated: {', '.join(reasons) or 'risk score'}",
            user_id=sess.user_id,
            email=user.email if user else None,
            ip_address=sess.ip_address,
            payload=SessionPayload(
                session_id=sess.id,
                reason=AUTO_INVALIDATION_REASON,
                reasons=reasons,
            ),
            risk_level="high",
        )
        if user is not None:
            notify_session_invalidated(user.email, sess, reasons or ["risk score"])


def _expire_bans(now, stats: CleanupStats):
    stats.bans_expired = cleanup_expired_bans(now=now)


STEPS = [
    ("expire_sessions", _expire_sessions),
    ("purge_inactive_sessions", _purge_inactive_sessions),
    ("recheck_suspicious_sessions", _recheck_suspicious_sessions),
    ("expire_ip_bans", _expire_bans),
]


def run_session_cleanup(now=None) -> CleanupStats:
    started = time.monotonic()
    now = now or utcnow()
    stats = CleanupStats()

    for name, step in STEPS:
        try:
            step(now, stats)
        except Exception as e:
            db.session.rollback()
            logger.exception(f"Cleanup step {name} failed")
            stats.failed_steps.append(name)
            notify_critical(
                EventType.CLEANUP_STEP_FAILED.value,
                f"Session cleanup step {name} failed",
                {"error": str(e)},
            )

    stats.duration_ms = int((time.monotonic() - started) * 1000)
    record_event(
        EventType.SESSION_CLEANUP_COMPLETED,
        f"Session cleanup: {stats.expired} expired, {stats.inactive} inactive, "
        f"{stats.invalidated} invalidated of {stats.checked} checked, {stats.users_affected} user(s) affected",
        payload=CleanupSummaryPayload(**stats.to_dict()),
        risk_level="medium" if stats.failed_steps else "low",
        success=not stats.failed_steps,
    )
    logger.info(f"Session cleanup finished in {stats.duration_ms}ms: {stats.to_dict()}")
    return stats


class CleanupScheduler:
    """Runs run_session_cleanup on a daemon thread every `interval_seconds`."""

    def __init__(self, app, interval_seconds: Optional[int] = None):
        self.app = app
        self.interval_seconds = interval_seconds or app.config.get("CLEANUP_INTERVAL_SECONDS", 3600)
        self._running = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> Optional[CleanupStats]:
        if not self._running.acquire(blocking=False):
            logger.info("Session cleanup already running, skipping this tick")
            return None
        try:
            with self.app.app_context():
                return run_session_cleanup()
        finally:
            self._running.release()

    def _loop(self):
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Session cleanup run crashed")
            if self._stop.wait(self.interval_seconds):
                break

    def run_forever(self):
        """Blocking variant of start(), for a dedicated worker process."""
        self._stop.clear()
        self._loop()

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="session-cleanup", daemon=True)
        self._thread.start()
        logger.info(f"Cleanup scheduler started (every {self.interval_seconds}s)")

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
