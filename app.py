"""Flask application factory for the barangay resident-services API."""
import atexit
import os
from datetime import datetime
from typing import Optional

import click
from flask import Flask, g, jsonify, request, session
from sqlalchemy import create_engine, text
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import OperationalError
from dotenv import load_dotenv
from utils.blob_store import init_blob_store, sweep_orphans
from utils.connection_registry import ConnectionRegistry
from utils.errors import register_error_handlers
from utils.logger import REQUEST_ID_HEADER, assign_request_id, init_logging
from utils.security import AttemptLimiter, apply_security_headers, load_identity_from_token, token_from_request
from extensions import csrf, db, migrate, login_manager

DEFAULT_ROLES: list[tuple[str, str]] = [
    ("resident", "Registered barangay resident"),
    ("staff", "Barangay staff handling requests and inquiries"),
    ("admin", "Platform administrator with full privileges"),
]


def ensure_default_roles_and_admin(app: Flask) -> None:
    """Ensure baseline roles exist and a default admin can log in without registering."""
    from models import Role, User  # Local import to avoid circular dependency

    role_cache: dict[str, Role] = {}
    for name, description in DEFAULT_ROLES:
        role_cache[name] = Role.get_or_create(name, description=description)

    admin_email = (app.config.get("DEFAULT_ADMIN_EMAIL") or "").lower().strip()
    admin_username = (app.config.get("DEFAULT_ADMIN_USERNAME") or "admin").strip()
    admin_password = app.config.get("DEFAULT_ADMIN_PASSWORD") or ""
    if not admin_email or not admin_password:
        return

    admin_role = role_cache["admin"]
    admin_user = User.query.filter_by(email=admin_email).first()

    if admin_user:
        updates = False
        if admin_user.role != admin_role:
            admin_user.role = admin_role
            updates = True
        if not admin_user.is_active:
            admin_user.is_active = True
            updates = True
        if updates:
            db.session.add(admin_user)
            db.session.commit()
        return

    admin_user = User(
        username=admin_username,
        full_name="System Administrator",
        email=admin_email,
        role=admin_role,
        is_verified=True,
        is_active=True,
    )
    admin_user.set_password(admin_password)
    db.session.add(admin_user)
    db.session.commit()


def ensure_database_exists(database_uri: str) -> None:
    """Create the target database if it does not exist (PostgreSQL + SQLite support)."""
    url = make_url(database_uri)

    if url.drivername.startswith("sqlite"):
        # For SQLite just make sure the parent directory exists.
        if url.database:
            os.makedirs(os.path.dirname(url.database) or ".", exist_ok=True)
        return

    if url.drivername.startswith("postgres"):
        db_name = url.database
        admin_url = url.set(database=os.getenv("POSTGRES_DB_ADMIN", "postgres"))
        engine = create_engine(admin_url, isolation_level="AUTOCOMMIT")
        try:
            with engine.connect() as conn:
                exists = conn.execute(
                    text("SELECT 1 FROM pg_database WHERE datname = :name"), {"name": db_name}
                ).scalar()
                if not exists:
                    conn.execute(text(f'CREATE DATABASE "{db_name}"'))
        except OperationalError:
            # If we cannot connect/create, let the normal app startup fail loudly later.
            pass
        finally:
            engine.dispose()


def _init_auth(app: Flask) -> None:
    login_manager.init_app(app)

    @login_manager.user_loader
    def load_user(user_id):
        from models import Guest, User  # Local import to avoid circular dependency

        if not user_id:
            return None
        if str(user_id).startswith("guest:"):
            guest = db.session.get(Guest, str(user_id).split(":", 1)[1])
            return guest if guest and not guest.is_expired else None
        user = db.session.get(User, str(user_id))
        return user if user and user.is_active else None

    @login_manager.request_loader
    def load_user_from_request(req):
        token = token_from_request(req)
        if not token:
            return None
        return load_identity_from_token(token)

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({"message": "Please authenticate"}), 401


def _register_cli(app: Flask) -> None:
    @app.cli.command("blobs-sweep")
    @click.option("--dry-run", is_flag=True, help="List orphaned blobs without deleting them.")
    @click.option("--min-age", default=300, show_default=True, help="Skip blobs younger than this many seconds.")
    def blobs_sweep(dry_run, min_age):
        """Delete blobs that no metadata record points at (schedule this via cron)."""
        removed = sweep_orphans(dry_run=dry_run, min_age_seconds=min_age)
        for bucket, keys in removed.items():
            click.echo(f"{bucket}: {len(keys)} {'orphan(s) found' if dry_run else 'removed'}")

    @app.cli.command("guests-purge")
    def guests_purge():
        """Remove expired guest sessions that never opened an inquiry."""
        from models import Guest, Inquiry  # Local import to avoid circular dependency

        expired = Guest.query.filter(
            Guest.expires_at <= datetime.utcnow(),
            ~Guest.id.in_(db.session.query(Inquiry.guest_id).filter(Inquiry.guest_id.isnot(None))),
        )
        count = expired.delete(synchronize_session=False)
        db.session.commit()
        click.echo(f"Removed {count} expired guest session(s)")


def create_app(config_name: Optional[str] = None) -> Flask:
    """Application factory with environment-aware configuration."""
    load_dotenv()

    app = Flask(__name__, instance_relative_config=True)

    # Resolve configuration
    from config import DevelopmentConfig, ProductionConfig, TestingConfig

    config_key = (config_name or os.getenv("FLASK_CONFIG") or os.getenv("FLASK_ENV") or "production").lower()
    config_map = {
        "development": DevelopmentConfig,
        "dev": DevelopmentConfig,
        "production": ProductionConfig,
        "prod": ProductionConfig,
        "testing": TestingConfig,
        "test": TestingConfig,
    }
    config_class = config_map.get(config_key, ProductionConfig)
    app.config.from_object(config_class())

    ensure_database_exists(app.config["SQLALCHEMY_DATABASE_URI"])

    # Optional instance-specific overrides
    app.config.from_pyfile("config.py", silent=True)
    os.makedirs(app.instance_path, exist_ok=True)

    # Initialize logging early
    logger = init_logging(app)
    app.logger = logger

    # Initialize extensions
    csrf.init_app(app)
    db.init_app(app)
    migrate.init_app(app, db)
    _init_auth(app)
    init_blob_store(app)

    registry = ConnectionRegistry()
    app.extensions["connection_registry"] = registry
    app.extensions["login_limiter"] = AttemptLimiter(app.config.get("LOGIN_ATTEMPT_WINDOW_SECONDS", 900))
    atexit.register(registry.close)

    # Blueprints
    from routes import API_BLUEPRINTS, main_bp

    app.register_blueprint(main_bp)
    for blueprint in API_BLUEPRINTS:
        # Bearer-token clients cannot carry a CSRF token; cookie sessions are checked below.
        csrf.exempt(blueprint)
        app.register_blueprint(blueprint)

    _register_cli(app)

    # Error handlers
    register_error_handlers(app)

    # Request lifecycle hooks
    app.before_request(assign_request_id)

    @app.before_request
    def _csrf_for_cookie_sessions() -> None:
        if not app.config.get("WTF_CSRF_ENABLED"):
            return
        if request.method in ("GET", "HEAD", "OPTIONS") or request.headers.get("Authorization"):
            return
        cookie_name = app.config.get("JWT_COOKIE_NAME", "token")
        if session.get("_user_id") or request.cookies.get(cookie_name):
            csrf.protect()

    @app.after_request
    def _after_request(response):
        response.headers.setdefault(REQUEST_ID_HEADER, getattr(g, "request_id", ""))
        return apply_security_headers(response, force_https=app.config.get("PREFERRED_URL_SCHEME") == "https")

    # Ensure tables exist so first run creates the database structure automatically.
    with app.app_context():
        db.create_all()
        ensure_default_roles_and_admin(app)

    return app
