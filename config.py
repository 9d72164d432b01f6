import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_list(name: str) -> list:
    raw = os.getenv(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


class Config:
    # Secrets
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-only-change-me")

    # Key material for TOTP secrets at rest (SHA-256 derived AES-256 key)
    ENCRYPTION_KEY = os.getenv("ENCRYPTION_KEY", "dev-only-encryption-key-change-me")

    # SQLite database file stored next to this file as sessionguard.db
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///" + os.path.join(BASE_DIR, "sessionguard.db")
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Session cookie name for our auth token
    AUTH_COOKIE_NAME = "sessionguard_session"

    # Double-submit CSRF token: readable cookie echoed back in this header
    CSRF_COOKIE_NAME = os.getenv("CSRF_COOKIE_NAME", "sessionguard_csrf")
    CSRF_HEADER_NAME = "X-CSRF-Token"

    # 24 hours absolute session lifetime
    SESSION_LIFETIME_SECONDS = int(os.getenv("SESSION_LIFETIME_SECONDS", str(24 * 60 * 60)))

    # Sessions idle longer than this are purged by the cleanup job
    SESSION_INACTIVITY_TTL_DAYS = int(os.getenv("SESSION_INACTIVITY_TTL_DAYS", "7"))

    # Session/cookie security defaults
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    SESSION_COOKIE_SECURE = _env_bool("SESSION_COOKIE_SECURE", "false")

    # Brute-force protection
    MAX_LOGIN_ATTEMPTS = int(os.getenv("MAX_LOGIN_ATTEMPTS", "5"))
    LOGIN_ATTEMPT_WINDOW_MINUTES = int(os.getenv("LOGIN_ATTEMPT_WINDOW_MINUTES", "15"))
    LOCKOUT_MINUTES = int(os.getenv("LOCKOUT_MINUTES", "30"))

    # Shared counter store; empty means process-local memory (single instance only)
    REDIS_URL = os.getenv("REDIS_URL")

    # TOTP / backup codes
    TOTP_ISSUER = os.getenv("TOTP_ISSUER", "SessionGuard")
    TOTP_STEP_SECONDS = int(os.getenv("TOTP_STEP_SECONDS", "30"))
    TOTP_VALID_WINDOW = int(os.getenv("TOTP_VALID_WINDOW", "1"))
    BACKUP_CODE_COUNT = int(os.getenv("BACKUP_CODE_COUNT", "8"))
    BACKUP_CODE_BCRYPT_ROUNDS = int(os.getenv("BACKUP_CODE_BCRYPT_ROUNDS", "10"))
    PASSWORD_BCRYPT_ROUNDS = int(os.getenv("PASSWORD_BCRYPT_ROUNDS", "12"))

    # Pending 2FA login challenge
    TWO_FACTOR_CHALLENGE_TTL_SECONDS = int(os.getenv("TWO_FACTOR_CHALLENGE_TTL_SECONDS", "300"))
    TWO_FACTOR_MAX_ATTEMPTS = int(os.getenv("TWO_FACTOR_MAX_ATTEMPTS", "3"))

    # Risk buckets: low < 40 <= medium < 70 <= high < 90 <= critical
    RISK_MEDIUM_THRESHOLD = int(os.getenv("RISK_MEDIUM_THRESHOLD", "40"))
    RISK_HIGH_THRESHOLD = int(os.getenv("RISK_HIGH_THRESHOLD", "70"))
    RISK_CRITICAL_THRESHOLD = int(os.getenv("RISK_CRITICAL_THRESHOLD", "90"))

    # Cleanup job
    CLEANUP_RESCORE_THRESHOLD = int(os.getenv("CLEANUP_RESCORE_THRESHOLD", "80"))
    CLEANUP_FORCE_INVALIDATE_SCORE = int(os.getenv("CLEANUP_FORCE_INVALIDATE_SCORE", "95"))
    CLEANUP_INTERVAL_SECONDS = int(os.getenv("CLEANUP_INTERVAL_SECONDS", "3600"))
    CLEANUP_SCHEDULER_ENABLED = _env_bool("CLEANUP_SCHEDULER_ENABLED", "false")

    # Bearer token expected from the external scheduler caller
    SYSTEM_CLEANUP_TOKEN = os.getenv("SYSTEM_CLEANUP_TOKEN")

    # IP geolocation (best effort)
    GEOIP_ENABLED = _env_bool("GEOIP_ENABLED", "true")
    GEOIP_API_URL = os.getenv("GEOIP_API_URL", "https://ipapi.co")
    GEOIP_TIMEOUT_SECONDS = float(os.getenv("GEOIP_TIMEOUT_SECONDS", "3"))

    # Known Tor exit nodes (comma separated)
    TOR_EXIT_NODES = _env_list("TOR_EXIT_NODES")

    # Email (SMTP)
    SMTP_HOST = os.getenv("SMTP_HOST")
    SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USERNAME = os.getenv("SMTP_USERNAME")
    SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
    SMTP_FROM_EMAIL = os.getenv("SMTP_FROM_EMAIL")
    SMTP_USE_TLS = _env_bool("SMTP_USE_TLS", "true")
    SMTP_TIMEOUT_SECONDS = float(os.getenv("SMTP_TIMEOUT_SECONDS", "5"))

    # Operator channel for critical alerts
    ADMIN_ALERT_EMAIL = os.getenv("ADMIN_ALERT_EMAIL")

    # Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    AUDIT_FALLBACK_LOG = os.getenv("AUDIT_FALLBACK_LOG")

    # Basic app settings
    DEBUG = False


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    ENCRYPTION_KEY = "test-encryption-key"
    SECRET_KEY = "test-secret"
    REDIS_URL = None
    BACKUP_CODE_BCRYPT_ROUNDS = 4
    PASSWORD_BCRYPT_ROUNDS = 4
    GEOIP_ENABLED = False
    TOR_EXIT_NODES = ["185.220.101.1"]
    SYSTEM_CLEANUP_TOKEN = "test-cleanup-token"
    ADMIN_ALERT_EMAIL = "ops@example.com"
    CLEANUP_SCHEDULER_ENABLED = False
    SMTP_HOST = None
