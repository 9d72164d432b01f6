"""
Pytest configuration and shared fixtures for SessionGuard tests.

This module provides:
- An app built from TestConfig with an in-memory SQLite database
- A fake clock driving the in-memory counter store
- User / admin factories and a logged-in test client helper
- Captured outbound email instead of SMTP
"""
import pytest

from app import create_app
from config import TestConfig
from models import db
from models.user import Role, User
from security.kvstore import MemoryStore
from security.password import hash_password
from utils.device import build_device_info
from utils.seed import seed_roles

PASSWORD = "CorrectHorseBattery1!"
CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
FIREFOX_UA = "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0"


class FakeClock:
    """Callable returning epoch seconds; advance() moves time forward."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ============================================
# Application Fixtures
# ============================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def app(store):
    app = create_app(TestConfig, store=store)
    with app.app_context():
        db.create_all()
        seed_roles()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def sent_emails(monkeypatch):
    """Capture every email instead of talking to SMTP."""
    sent = []

    def fake_send(to_email, subject, body):
        sent.append({"to": to_email, "subject": subject, "body": body})
        return True, None

    monkeypatch.setattr("utils.emailer.send_email", fake_send)
    return sent


# ============================================
# Data Fixtures
# ============================================

@pytest.fixture
def make_user(app):
    def _make(email="alice@example.com", password=PASSWORD, roles=("USER",)):
        user = User(email=email, password_hash=hash_password(password))
        for name in roles:
            user.roles.append(Role.query.filter_by(name=name).first())
        db.session.add(user)
        db.session.commit()
        return user
    return _make


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def admin(make_user):
    return make_user(email="admin@example.com", roles=("USER", "ADMIN"))


@pytest.fixture
def device():
    def _device(ip="198.51.100.10", user_agent=CHROME_UA, geo=None):
        return build_device_info(ip, user_agent, geo=geo)
    return _device


# ============================================
# HTTP helpers
# ============================================

def use_device(client, ip="198.51.100.10", user_agent=CHROME_UA):
    """Make every following request from `client` come from this device."""
    client.environ_base["HTTP_X_FORWARDED_FOR"] = ip
    client.environ_base["HTTP_USER_AGENT"] = user_agent


def login(client, email="alice@example.com", password=PASSWORD, ip="198.51.100.10", user_agent=CHROME_UA):
    use_device(client, ip=ip, user_agent=user_agent)
    return client.post(
        "/auth/login",
        json={"email": email, "password": password},
        headers={"X-Forwarded-For": ip, "User-Agent": user_agent},
    )


def csrf_headers(client, **extra):
    config = client.application.config
    cookie = client.get_cookie(config["CSRF_COOKIE_NAME"])
    headers = {config["CSRF_HEADER_NAME"]: cookie.value if cookie else ""}
    headers.update(extra)
    return headers
