"""
Tests for the session cleanup job and its scheduler.
"""
import json
from datetime import timedelta

import pytest

from models import db
from models.audit_log import AuditEvent
from models.session import UserSession
from security import cleanup
from security.cleanup import CleanupScheduler, run_session_cleanup
from security.session import create_session
from utils.clock import utcnow
from utils.ip_bans import ban_ip, is_ip_banned


@pytest.fixture
def make_session(user, device):
    def _make(risk_score=0, last_activity=None, user_agent=None, location="Unknown", suspicious=False, user_id=None):
        now = utcnow()
        kwargs = {"user_agent": user_agent} if user_agent else {}
        sess = create_session(user_id or user.id, device(**kwargs), now=now)
        sess.risk_score = risk_score
        sess.is_suspicious = suspicious
        sess.location = location
        sess.last_activity = last_activity or now
        sess.expires_at = now + timedelta(hours=24)
        db.session.commit()
        return sess
    return _make


def summary_events():
    return AuditEvent.query.filter_by(event_type="session_cleanup_completed").all()


class TestAutoInvalidation:

    def test_risk_96_is_invalidated(self, user, make_session, sent_emails):
        sess = make_session(risk_score=96)

        stats = run_session_cleanup()

        row = db.session.get(UserSession, sess.id)
        assert row.is_active is False
        assert row.invalidation_reason == "automatic_security_invalidation"
        assert stats.invalidated == 1
        assert [e["to"] for e in sent_emails] == [user.email]

        events = summary_events()
        assert len(events) == 1
        assert json.loads(events[0].metadata_json)["invalidated"] == 1

    def test_single_reason_is_not_enough(self, make_session, sent_emails):
        sess = make_session(risk_score=91)

        stats = run_session_cleanup()

        assert db.session.get(UserSession, sess.id).is_active is True
        assert stats.checked == 1
        assert stats.invalidated == 0

    def test_two_reasons_invalidate(self, make_session, sent_emails):
        sess = make_session(
            risk_score=85,
            user_agent="curl/8.4.0",
            last_activity=utcnow() - timedelta(hours=50),
        )

        run_session_cleanup()
        assert db.session.get(UserSession, sess.id).is_active is False

    def test_conflicting_locations(self, make_session, sent_emails):
        flagged = make_session(risk_score=90, location="Paris, France", suspicious=True)
        make_session(location="Tokyo, Japan")

        reasons = cleanup.invalidation_reasons(
            flagged,
            UserSession.query.filter_by(is_active=True).all(),
            utcnow(),
        )
        assert "conflicting_locations" in reasons
        assert "high_risk_score" in reasons

        run_session_cleanup()
        assert db.session.get(UserSession, flagged.id).is_active is False

    def test_low_risk_sessions_are_not_checked(self, make_session, sent_emails):
        make_session(risk_score=20, user_agent="curl/8.4.0")
        assert run_session_cleanup().checked == 0

    def test_second_run_is_a_no_op(self, make_session, sent_emails):
        make_session(risk_score=97)

        assert run_session_cleanup().invalidated == 1
        assert run_session_cleanup().invalidated == 0
        assert len(sent_emails) == 1
        assert len(summary_events()) == 2


class TestUsersAffected:

    def test_distinct_users_counted(self, make_user, make_session, sent_emails):
        bob = make_user(email="bob@example.com")
        make_session(risk_score=96)
        make_session(risk_score=97)
        make_session(risk_score=96, user_id=bob.id)

        stats = run_session_cleanup()

        assert stats.invalidated == 3
        assert stats.users_affected == 2
        assert json.loads(summary_events()[0].metadata_json)["users_affected"] == 2

    def test_inactive_purge_and_recheck_combined(self, user, make_user, make_session, sent_emails):
        bob = make_user(email="bob@example.com")
        carol = make_user(email="carol@example.com")
        make_session(user_id=bob.id, last_activity=utcnow() - timedelta(days=8))
        make_session(risk_score=99, user_id=carol.id)
        make_session(risk_score=99, user_id=bob.id)

        stats = run_session_cleanup()

        assert stats.inactive == 1
        assert stats.invalidated == 2
        assert stats.users_affected == 2
        assert "affected_user_ids" not in stats.to_dict()

    def test_quiet_run_affects_nobody(self, make_session):
        make_session(risk_score=10)
        assert run_session_cleanup().users_affected == 0


class TestExpiry:

    def test_expired_and_inactive_sessions(self, user, device):
        now = utcnow()
        expired = create_session(user.id, device(), now=now - timedelta(hours=30))
        idle = create_session(user.id, device(), now=now - timedelta(days=8))
        idle.expires_at = now + timedelta(days=1)
        fresh = create_session(user.id, device(), now=now)
        db.session.commit()

        stats = run_session_cleanup(now=now)

        assert stats.expired == 1
        assert stats.inactive == 1
        assert db.session.get(UserSession, expired.id).invalidation_reason == "expired"
        assert db.session.get(UserSession, idle.id).invalidation_reason == "long_inactivity_cleanup"
        assert db.session.get(UserSession, fresh.id).is_active is True

    def test_expired_ip_bans_deactivated(self, app):
        now = utcnow()
        ban_ip("203.0.113.50", duration_hours=1, now=now - timedelta(hours=2))
        ban_ip("203.0.113.51")

        stats = run_session_cleanup(now=now)

        assert stats.bans_expired == 1
        assert not is_ip_banned("203.0.113.50")
        assert is_ip_banned("203.0.113.51")


class TestStepIsolation:

    def test_failing_step_is_reported_and_others_run(self, make_session, monkeypatch, sent_emails):
        alerts = []
        monkeypatch.setattr(cleanup, "notify_critical", lambda *a, **kw: alerts.append(a))

        def broken(now, stats):
            raise RuntimeError("boom")

        steps = list(cleanup.STEPS)
        steps[0] = ("expire_sessions", broken)
        monkeypatch.setattr(cleanup, "STEPS", steps)

        make_session(risk_score=99)
        stats = run_session_cleanup()

        assert stats.failed_steps == ["expire_sessions"]
        assert stats.invalidated == 1
        assert alerts and alerts[0][0] == "cleanup_step_failed"

        event = summary_events()[0]
        assert event.success is False


class TestScheduler:

    def test_run_once(self, app, make_session, sent_emails):
        make_session(risk_score=99)
        stats = CleanupScheduler(app, interval_seconds=60).run_once()
        assert stats.invalidated == 1

    def test_overlapping_run_is_skipped(self, app):
        scheduler = CleanupScheduler(app, interval_seconds=60)
        scheduler._running.acquire()
        try:
            assert scheduler.run_once() is None
        finally:
            scheduler._running.release()

    def test_interval_defaults_to_config(self, app):
        assert CleanupScheduler(app).interval_seconds == app.config["CLEANUP_INTERVAL_SECONDS"]
