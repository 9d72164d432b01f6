"""
HTTP-level tests: login, 2FA, session management, admin actions and the
system cleanup endpoint.
"""
import time

from models import db
from models.audit_log import AuditEvent
from models.session import UserSession
from security.two_factor import totp_code_at
from utils.ip_bans import ban_ip

from conftest import FIREFOX_UA, PASSWORD, csrf_headers, login, use_device

SYSTEM_AUTH = {"Authorization": "Bearer test-cleanup-token"}


def events(event_type):
    return AuditEvent.query.filter_by(event_type=event_type).all()


class TestHealth:

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.get_json() == {"status": "ok", "database": "ok"}
        assert r.headers["X-Frame-Options"] == "DENY"


class TestLogin:

    def test_login_and_me(self, client, user, sent_emails):
        r = login(client)
        assert r.status_code == 200
        body = r.get_json()
        assert body["session_id"]
        assert body["risk_score"] == 0
        assert client.get_cookie("sessionguard_session") is not None

        me = client.get("/auth/me")
        assert me.status_code == 200
        assert me.get_json()["email"] == user.email
        assert me.get_json()["session"]["is_current"] is True

        assert len(events("login_success")) == 1

    def test_me_requires_login(self, client):
        assert client.get("/auth/me").status_code == 401

    def test_missing_fields(self, client):
        r = client.post("/auth/login", json={"email": "alice@example.com"})
        assert r.status_code == 400

    def test_wrong_password(self, client, user):
        r = login(client, password="nope")
        assert r.status_code == 401
        assert r.get_json()["error"] == "Invalid credentials"

    def test_unknown_user_same_error(self, client, user):
        r = login(client, email="nobody@example.com", password="nope")
        assert r.status_code == 401
        assert r.get_json()["error"] == "Invalid credentials"

    def test_lockout_after_five_failures(self, client, user):
        for _ in range(4):
            assert login(client, password="nope").status_code == 401

        r = login(client, password="nope")
        assert r.status_code == 429
        assert r.get_json()["remaining_lock_minutes"] == 30

        # correct password is refused while locked
        assert login(client).status_code == 429
        assert events("account_locked")

    def test_banned_ip(self, client, user, sent_emails):
        ban_ip("203.0.113.66", reason="abuse")

        r = login(client, ip="203.0.113.66")
        assert r.status_code == 403

        event = events("banned_ip_attempt")[0]
        assert event.risk_level == "critical"
        assert "ops@example.com" in [e["to"] for e in sent_emails]

    def test_suspended_user(self, client, user):
        user.is_suspended = True
        db.session.commit()

        r = login(client)
        assert r.status_code == 403
        assert r.get_json()["error"] == "Account suspended"

    def test_logout(self, client, user):
        login(client)
        r = client.post("/auth/logout", headers=csrf_headers(client))
        assert r.status_code == 200
        assert client.get("/auth/me").status_code == 401
        assert UserSession.query.one().invalidation_reason == "logout"

    def test_csrf_required_once_logged_in(self, client, user):
        login(client)
        r = client.post("/auth/logout")
        assert r.status_code == 403
        assert r.get_json()["error"] == "CSRF validation failed"


class TestTwoFactorFlow:

    def enable_2fa(self, client):
        setup = client.post("/2fa/setup", headers=csrf_headers(client))
        assert setup.status_code == 200
        data = setup.get_json()
        assert data["qr_code"].startswith("data:image/png;base64,")
        assert data["otpauth_url"].startswith("otpauth://totp/")

        secret = data["manual_entry_key"].replace(" ", "")
        r = client.post(
            "/2fa/enable",
            json={"code": totp_code_at(secret, time.time())},
            headers=csrf_headers(client),
        )
        assert r.status_code == 200
        return data["backup_codes"]

    def test_setup_enable_and_login_with_backup_code(self, client, user, sent_emails):
        login(client)
        backup_codes = self.enable_2fa(client)

        status = client.get("/2fa/status").get_json()
        assert status["enabled"] is True
        assert status["backup_codes_remaining"] == len(backup_codes)

        client.post("/auth/logout", headers=csrf_headers(client))

        r = login(client)
        assert r.status_code == 200
        challenge = r.get_json()
        assert challenge["two_factor_required"] is True
        assert "session_id" not in challenge

        r = client.post(
            "/2fa/verify-login",
            json={"challenge_token": challenge["challenge_token"], "code": backup_codes[0]},
        )
        assert r.status_code == 200
        assert client.get("/auth/me").status_code == 200
        assert client.get("/2fa/status").get_json()["backup_codes_remaining"] == len(backup_codes) - 1
        assert events("2fa_login_success")

    def test_setup_twice_conflicts(self, client, user):
        login(client)
        self.enable_2fa(client)
        assert client.post("/2fa/setup", headers=csrf_headers(client)).status_code == 409

    def test_enable_with_wrong_code(self, client, user):
        login(client)
        client.post("/2fa/setup", headers=csrf_headers(client))
        r = client.post("/2fa/enable", json={"code": "abc"}, headers=csrf_headers(client))
        assert r.status_code == 400

    def test_challenge_dies_after_three_wrong_codes(self, client, user, sent_emails):
        login(client)
        backup_codes = self.enable_2fa(client)
        client.post("/auth/logout", headers=csrf_headers(client))

        token = login(client).get_json()["challenge_token"]

        def verify(code):
            return client.post("/2fa/verify-login", json={"challenge_token": token, "code": code})

        assert verify("000000").get_json()["error"] == "Invalid verification code"
        assert verify("000000").status_code == 401
        r = verify("000000")
        assert r.status_code == 401
        assert r.get_json()["error"] == "Too many invalid codes. Sign in again."

        r = verify(backup_codes[0])
        assert r.status_code == 401
        assert r.get_json()["error"] == "Two-factor challenge expired or invalid"

    def test_wrong_codes_lock_the_account(self, client, user, sent_emails):
        login(client)
        self.enable_2fa(client)
        client.post("/auth/logout", headers=csrf_headers(client))

        def verify(token, code="000000"):
            return client.post("/2fa/verify-login", json={"challenge_token": token, "code": code})

        first = login(client).get_json()["challenge_token"]
        for _ in range(3):
            assert verify(first).status_code == 401

        # a fresh challenge does not reset the failure count
        second = login(client).get_json()["challenge_token"]
        assert verify(second).status_code == 401
        r = verify(second)
        assert r.status_code == 429
        assert r.get_json()["remaining_lock_minutes"] == 30

        assert login(client).status_code == 429
        assert any("two-factor" in e.description for e in events("account_locked"))

    def test_correct_password_does_not_reset_failures(self, client, user, sent_emails):
        login(client)
        self.enable_2fa(client)
        client.post("/auth/logout", headers=csrf_headers(client))

        for _ in range(4):
            assert login(client, password="nope").status_code == 401

        token = login(client).get_json()["challenge_token"]
        r = client.post("/2fa/verify-login", json={"challenge_token": token, "code": "000000"})
        assert r.status_code == 429

    def test_successful_second_factor_resets_failures(self, client, user, sent_emails):
        login(client)
        backup_codes = self.enable_2fa(client)
        client.post("/auth/logout", headers=csrf_headers(client))

        for _ in range(4):
            assert login(client, password="nope").status_code == 401

        token = login(client).get_json()["challenge_token"]
        r = client.post("/2fa/verify-login", json={"challenge_token": token, "code": backup_codes[0]})
        assert r.status_code == 200
        client.post("/auth/logout", headers=csrf_headers(client))

        for _ in range(4):
            assert login(client, password="nope").status_code == 401

    def test_disable_requires_password_and_code(self, client, user):
        login(client)
        backup_codes = self.enable_2fa(client)

        r = client.post(
            "/2fa/disable",
            json={"password": "wrong", "code": backup_codes[0]},
            headers=csrf_headers(client),
        )
        assert r.status_code == 401

        r = client.post(
            "/2fa/disable",
            json={"password": PASSWORD, "code": backup_codes[1]},
            headers=csrf_headers(client),
        )
        assert r.status_code == 200
        assert client.get("/2fa/status").get_json()["enabled"] is False


class TestSessions:

    def test_list_and_security_status(self, client, user):
        login(client)
        r = client.get("/sessions")
        assert r.status_code == 200
        assert r.get_json()["total"] == 1

        status = client.get("/sessions/security-status").get_json()
        assert status["risk_level"] == "low"
        assert status["active_sessions"] == 1

    def test_revoke_all_others_kills_second_device(self, app, client, user, sent_emails):
        other = app.test_client()
        login(client)
        login(other, ip="198.51.100.20", user_agent=FIREFOX_UA)
        assert other.get("/auth/me").status_code == 200

        r = client.delete("/sessions", headers=csrf_headers(client))
        assert r.status_code == 200
        assert r.get_json()["invalidated"] == 1

        assert other.get("/auth/me").status_code == 401
        assert client.get("/auth/me").status_code == 200

        reuse = events("session_token_reuse")
        assert reuse and reuse[0].risk_level == "high"

    def test_revoke_single_session(self, app, client, user, sent_emails):
        other = app.test_client()
        login(client)
        other_id = login(other, user_agent=FIREFOX_UA).get_json()["session_id"]

        r = client.delete(f"/sessions/{other_id}", headers=csrf_headers(client))
        assert r.status_code == 200
        assert r.get_json()["invalidated"] is True

    def test_cannot_revoke_current_session(self, client, user):
        session_id = login(client).get_json()["session_id"]
        r = client.delete(f"/sessions/{session_id}", headers=csrf_headers(client))
        assert r.status_code == 400

    def test_cookie_used_from_another_browser(self, client, user, sent_emails):
        login(client)
        use_device(client, user_agent=FIREFOX_UA)

        assert client.get("/auth/me").status_code == 200
        row = UserSession.query.one()
        assert row.is_suspicious is True
        assert row.risk_score == 50

        # same cookie again once the login itself looked risky
        row.baseline_risk_score = 40
        db.session.commit()

        assert client.get("/auth/me").status_code == 401
        db.session.refresh(row)
        assert row.is_active is False
        assert row.invalidation_reason == "suspicious_activity"
        assert [e["to"] for e in sent_emails] == [user.email]

    def test_other_users_session_not_found(self, app, client, user, make_user, sent_emails):
        make_user(email="bob@example.com")
        bob = app.test_client()
        bob_session = login(bob, email="bob@example.com").get_json()["session_id"]

        login(client)
        r = client.delete(f"/sessions/{bob_session}", headers=csrf_headers(client))
        assert r.status_code == 404


class TestAdmin:

    def action(self, client, **body):
        return client.post("/admin/security-actions", json=body, headers=csrf_headers(client))

    def test_requires_admin(self, client, user):
        login(client)
        assert self.action(client, action="list_banned_ips").status_code == 403

    def test_ban_and_list(self, client, admin):
        login(client, email=admin.email)

        r = self.action(client, action="ban_ip", ip_address="203.0.113.77", reason="scanner", duration_hours=2)
        assert r.status_code == 200

        listed = self.action(client, action="list_banned_ips").get_json()
        assert [b["ip_address"] for b in listed["banned_ips"]] == ["203.0.113.77"]

        assert events("ip_banned")
        assert events("api_call")
        assert any(e.success for e in events("admin_action"))

    def test_unban_unknown_ip(self, client, admin):
        login(client, email=admin.email)
        assert self.action(client, action="unban_ip", ip_address="203.0.113.78").status_code == 404

    def test_suspend_user_signs_them_out(self, app, client, admin, user, sent_emails):
        victim = app.test_client()
        login(victim)
        login(client, email=admin.email)

        r = self.action(client, action="suspend_user", user_id=user.id, reason="fraud")
        assert r.status_code == 200
        assert r.get_json()["sessions_invalidated"] == 1
        assert victim.get("/auth/me").status_code == 401
        assert login(app.test_client()).status_code == 403

        assert self.action(client, action="activate_user", user_id=user.id).status_code == 200
        assert login(app.test_client()).status_code == 200

    def test_cannot_suspend_self(self, client, admin):
        login(client, email=admin.email)
        assert self.action(client, action="suspend_user", user_id=admin.id).status_code == 400

    def test_invalidate_session(self, app, client, admin, user, sent_emails):
        target = login(app.test_client()).get_json()["session_id"]
        login(client, email=admin.email)

        r = self.action(client, action="invalidate_session", session_id=target)
        assert r.get_json()["invalidated"] is True
        assert events("admin_session_invalidated")

    def test_unknown_action(self, client, admin):
        login(client, email=admin.email)
        r = self.action(client, action="format_disk")
        assert r.status_code == 400
        assert "ban_ip" in r.get_json()["allowed"]
        assert any(not e.success for e in events("admin_action"))

    def test_security_summary(self, client, admin, user):
        login(client, password="nope")
        login(client, email=admin.email)

        r = client.get("/admin/security-summary?days=7")
        assert r.status_code == 200
        assert r.get_json()["failed_logins"] == 1

    def test_audit_logs(self, client, admin, user):
        login(client, password="nope")
        login(client, email=admin.email)

        r = client.get("/admin/audit-logs?event_type=login_failed")
        assert r.status_code == 200
        body = r.get_json()
        assert body["count"] == 1
        assert body["events"][0]["email"] == user.email
        assert body["events"][0]["success"] is False


class TestSystemCleanup:

    def test_requires_token(self, client):
        assert client.post("/system/session-cleanup").status_code == 401
        assert client.post(
            "/system/session-cleanup",
            headers={"Authorization": "Bearer wrong"},
        ).status_code == 401

    def test_runs_cleanup(self, client):
        r = client.post("/system/session-cleanup", headers=SYSTEM_AUTH)
        assert r.status_code == 200
        assert r.get_json()["stats"]["failed_steps"] == []
        assert events("session_cleanup_completed")

    def test_unconfigured_token(self, app, client):
        app.config["SYSTEM_CLEANUP_TOKEN"] = None
        assert client.post("/system/session-cleanup", headers=SYSTEM_AUTH).status_code == 503
