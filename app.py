import logging

import click
from flask import Flask
from flask_migrate import Migrate
from sqlalchemy.exc import SQLAlchemyError

from config import Config
from models import db
from models.user import Role, User
from routes import admin_bp, audit_bp, auth_bp, health_bp, sessions_bp, system_bp, two_factor_bp
from security.cleanup import CleanupScheduler, run_session_cleanup
from security.csrf import csrf_protect
from security.errors import register_error_handlers
from security.kvstore import init_store
from security.password import hash_password
from utils.auth_context import load_current_user
from utils.seed import seed_roles, seed_roles_if_ready

logger = logging.getLogger(__name__)


def configure_logging(app):
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    logging.getLogger().setLevel(level)

    fallback_path = app.config.get("AUDIT_FALLBACK_LOG")
    if fallback_path:
        fallback = logging.getLogger("sessionguard.audit.fallback")
        if not any(isinstance(h, logging.FileHandler) for h in fallback.handlers):
            handler = logging.FileHandler(fallback_path)
            handler.setFormatter(logging.Formatter("%(asctime)s %(message)s"))
            fallback.addHandler(handler)


def create_app(config_object=Config, store=None):
    app = Flask(__name__)
    app.config.from_object(config_object)

    configure_logging(app)

    # Register routes
    app.register_blueprint(health_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(two_factor_bp)
    app.register_blueprint(sessions_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(audit_bp)
    app.register_blueprint(system_bp)

    # Database init
    db.init_app(app)

    # Migrations
    Migrate(app, db)

    # Throttle counters and 2FA challenges
    init_store(app, store)

    register_error_handlers(app)

    # Seed default roles once the schema exists (idempotent)
    with app.app_context():
        try:
            seed_roles_if_ready()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.warning(f"Role seeding failed: {e}")

    @app.before_request
    def _load_user():
        load_current_user()

    # registered after _load_user; it needs g.user
    app.before_request(csrf_protect)

    @app.after_request
    def add_security_headers(resp):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["Referrer-Policy"] = "no-referrer"
        resp.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
        resp.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        resp.headers["Cache-Control"] = "no-store"
        return resp

    register_cli(app)

    if app.config.get("CLEANUP_SCHEDULER_ENABLED"):
        scheduler = CleanupScheduler(app)
        scheduler.start()
        app.extensions["sessionguard.cleanup_scheduler"] = scheduler

    return app


#-------------------------

def register_cli(app):
    @app.cli.command("make-admin")
    @click.argument("email")
    def make_admin(email):
        """Promote a user to ADMIN by email (bootstrap)."""
        user = User.query.filter_by(email=email.strip().lower()).first()
        if not user:
            print("User not found")
            return

        seed_roles()
        admin_role = Role.query.filter_by(name="ADMIN").one()

        if admin_role not in user.roles:
            user.roles.append(admin_role)
            db.session.commit()

        print(f"{user.email} promoted to ADMIN")

    @app.cli.command("create-user")
    @click.argument("email")
    @click.password_option()
    def create_user(email, password):
        """Create a USER account (registration is handled elsewhere)."""
        email = email.strip().lower()
        if User.query.filter_by(email=email).first():
            print("User already exists")
            return

        user = User(email=email, password_hash=hash_password(password))
        role = Role.query.filter_by(name="USER").first()
        if role:
            user.roles.append(role)
        db.session.add(user)
        db.session.commit()
        print(f"{user.email} created")

    @app.cli.command("session-cleanup")
    def session_cleanup():
        """Run the session cleanup job once."""
        stats = run_session_cleanup()
        print(
            f"expired={stats.expired} inactive={stats.inactive} checked={stats.checked} "
            f"invalidated={stats.invalidated} users_affected={stats.users_affected} bans_expired={stats.bans_expired} "
            f"failed_steps={','.join(stats.failed_steps) or '-'} ({stats.duration_ms}ms)"
        )

    @app.cli.command("cleanup-scheduler")
    @click.option("--interval", type=int, default=None, help="Seconds between runs")
    def cleanup_scheduler(interval):
        """Run the session cleanup job forever in the foreground."""
        scheduler = CleanupScheduler(app, interval_seconds=interval)
        print(f"Running session cleanup every {scheduler.interval_seconds}s (Ctrl+C to stop)")
        try:
            scheduler.run_forever()
        except KeyboardInterrupt:
            scheduler.stop()
            print("Stopped")

#-------------------------


if __name__ == "__main__":
    app = create_app()
    # Run locally
    app.run(host="127.0.0.1", port=5002)
