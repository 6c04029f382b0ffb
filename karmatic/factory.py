# -*- coding: utf-8 -*-
# ===================================================================
# Karmatic – search gate API (anonymous quota + search history)
# ===================================================================

import os, logging, uuid
import time as pytime
from urllib.parse import urlparse

import click
from flask import Flask, request, g
from flask_login import current_user
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge
from werkzeug.middleware.proxy_fix import ProxyFix

from karmatic.exceptions import KarmaticError
from karmatic.extensions import db, login_manager, oauth, migrate
from karmatic.models import User
import karmatic.quota as quota_module
from karmatic.services.history_service import (
    HISTORY_RETENTION_DAYS,
    purge_deleted_history,
    resolve_app_timezone,
)
from karmatic.session import SEARCH_SESSION_COOKIE, SESSION_COOKIE_MAX_AGE
from karmatic.utils.http_helpers import api_error, get_request_id, log_rejection

NO_STORE_PREFIXES = ("/api/search/",)


@login_manager.user_loader
def load_user(user_id):
    """
    Load user by ID from database.
    If DB connection fails, treat as unauthenticated (return None).
    """
    try:
        return db.session.get(User, int(user_id))
    except (SQLAlchemyError, ValueError) as e:
        logging.getLogger(__name__).warning("[AUTH] load_user failed: %s", e.__class__.__name__)
        db.session.rollback()
        db.session.remove()
        return None


def _env_flag(name: str, default: str = "0") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes")


def create_app(config=None):
    app = Flask(__name__)

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    logger = logging.getLogger(__name__)

    app_tz, app_tz_name = resolve_app_timezone()
    app.config["APP_TZ"] = app_tz_name
    app.config["APP_TZ_OBJ"] = app_tz
    logger.info("APP_TZ configured as %s", app_tz_name)

    # Proxy chain in front of the app (load balancer -> gunicorn)
    trusted_proxy_count = int(os.environ.get("TRUSTED_PROXY_COUNT", "1"))
    app.wsgi_app = ProxyFix(
        app.wsgi_app,
        x_for=trusted_proxy_count,
        x_proto=trusted_proxy_count,
        x_host=trusted_proxy_count,
        x_prefix=0,
    )

    # ======================
    # Database / secrets
    # ======================
    db_url = os.environ.get("DATABASE_URL", "").strip()
    secret_key = os.environ.get("SECRET_KEY", "").strip()

    # Normalize deprecated prefix for SQLAlchemy
    if db_url.startswith("postgres://"):
        db_url = db_url.replace("postgres://", "postgresql://", 1)

    is_production = _env_flag("RENDER") or os.environ.get("APP_ENV", "").strip().lower() == "production"
    if is_production and not db_url:
        raise RuntimeError("DATABASE_URL is missing. Set DATABASE_URL in the environment.")
    if is_production and not secret_key:
        raise RuntimeError("SECRET_KEY is missing. Set SECRET_KEY in the environment.")

    app.config["SQLALCHEMY_DATABASE_URI"] = db_url if db_url else "sqlite:///:memory:"
    app.config["SECRET_KEY"] = secret_key if secret_key else "dev-secret-key-that-is-not-secret"
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["MAX_CONTENT_LENGTH"] = 256 * 1024

    app.config["SESSION_COOKIE_SECURE"] = is_production
    app.config["SESSION_COOKIE_HTTPONLY"] = True
    app.config["SESSION_COOKIE_SAMESITE"] = "Lax"

    if db_url and "postgresql" in db_url:
        app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {
            "pool_pre_ping": True,
            "pool_recycle": 240,
            "pool_size": 5,
            "max_overflow": 10,
            "connect_args": {"connect_timeout": 10},
        }

    if db_url:
        parsed_db_url = urlparse(db_url)
        safe_port = f":{parsed_db_url.port}" if parsed_db_url.port else ""
        safe_db = (parsed_db_url.path or "").lstrip("/")
        logger.info("[DB] DATABASE host=%s%s db=%s", parsed_db_url.hostname or "", safe_port, safe_db or "(default)")
    else:
        logger.warning("[BOOT] DATABASE_URL not set. Using in-memory sqlite (LOCAL DEV ONLY).")
    if not secret_key:
        logger.warning("[BOOT] SECRET_KEY not set. Using dev fallback (LOCAL DEV ONLY).")

    # ======================
    # Search gate policy
    # ======================
    # Single source of truth for the anonymous allowance
    app.config["ANON_SEARCH_LIMIT"] = int(os.environ.get("ANON_SEARCH_LIMIT", str(quota_module.ANON_SEARCH_LIMIT)))
    app.config["ANON_SEARCH_WINDOW_HOURS"] = int(
        os.environ.get("ANON_SEARCH_WINDOW_HOURS", str(quota_module.ANON_SEARCH_WINDOW_HOURS))
    )
    app.config["SEARCH_SESSION_COOKIE"] = os.environ.get("SEARCH_SESSION_COOKIE", SEARCH_SESSION_COOKIE)
    app.config["SEARCH_SESSION_MAX_AGE"] = SESSION_COOKIE_MAX_AGE
    app.config["HISTORY_RETENTION_DAYS"] = int(os.environ.get("HISTORY_RETENTION_DAYS", str(HISTORY_RETENTION_DAYS)))
    app.config["CLEANUP_SECRET_KEY"] = os.environ.get("CLEANUP_SECRET_KEY", "").strip()
    app.config["FRONTEND_URL"] = os.environ.get("FRONTEND_URL", "/").strip() or "/"

    if config:
        app.config.update(config)
    logger.info(
        "[QUOTA] anonymous limit=%s window_hours=%s",
        app.config["ANON_SEARCH_LIMIT"],
        app.config["ANON_SEARCH_WINDOW_HOURS"],
    )

    # Init
    db.init_app(app)
    login_manager.init_app(app)
    oauth.init_app(app)
    migrate.init_app(app, db)

    oauth.register(
        name='identity',
        client_id=os.environ.get('OIDC_CLIENT_ID'),
        client_secret=os.environ.get('OIDC_CLIENT_SECRET'),
        server_metadata_url=os.environ.get('OIDC_DISCOVERY_URL'),
        client_kwargs={'scope': 'openid email profile'},
    )

    @app.before_request
    def assign_request_id():
        if not getattr(g, "request_id", None):
            g.request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        g.start_time = pytime.perf_counter()
        logger.info(
            "[REQ] request_id=%s %s %s auth=%s",
            g.request_id,
            request.method,
            request.path,
            current_user.is_authenticated,
        )

    @login_manager.unauthorized_handler
    def unauthorized():
        log_rejection("unauthenticated", "User not logged in, no valid session")
        return api_error("unauthenticated", "Inicia sesión para continuar", status=401)

    @app.errorhandler(KarmaticError)
    def handle_karmatic_error(e):
        if e.status >= 500:
            logger.error("[ERR] request_id=%s code=%s %s", get_request_id(), e.code, e.message)
        err = e.to_dict()
        return api_error(err["code"], err["message"], status=e.status, details=err.get("details"))

    @app.errorhandler(RequestEntityTooLarge)
    def handle_request_too_large(e):
        return api_error("payload_too_large", "Payload exceeds limit", status=413, details={"field": "payload"})

    @app.errorhandler(HTTPException)
    def handle_http_exception(e):
        code = (e.name or "error").lower().replace(" ", "_")
        return api_error(code, e.description or e.name, status=e.code or 500)

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        logger.exception("[ERR] unhandled request_id=%s", get_request_id())
        return api_error("internal_error", "Internal server error", status=500)

    @app.after_request
    def apply_security_headers(response):
        rid = get_request_id()
        response.headers.setdefault("X-Request-ID", rid)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        response.headers.setdefault("X-Frame-Options", "DENY")
        if is_production or request.is_secure:
            response.headers.setdefault("Strict-Transport-Security", "max-age=63072000; includeSubDomains")
        if request.path.startswith(NO_STORE_PREFIXES):
            response.headers["Cache-Control"] = "no-store"

        duration_ms = (pytime.perf_counter() - g.start_time) * 1000 if hasattr(g, "start_time") else 0.0
        user_id = current_user.id if current_user.is_authenticated else "anonymous"
        logger.info(
            "[RESP] request_id=%s method=%s path=%s status=%s duration_ms=%.2f user=%s",
            rid,
            request.method,
            request.path,
            response.status_code,
            duration_ms,
            user_id,
        )
        return response

    @app.teardown_request
    def teardown_request_handler(exc):
        try:
            db.session.rollback()
        except SQLAlchemyError:
            logger.exception("[DB] teardown rollback failed")
        finally:
            db.session.remove()

    with app.app_context():
        if is_production or _env_flag("SKIP_CREATE_ALL"):
            logger.info("[DB] skipping db.create_all(); run `flask db upgrade`")
        else:
            db.create_all()

    # ------------------
    # ===== ROUTES =====
    # ------------------
    from karmatic.routes.public_routes import bp as public_bp
    from karmatic.routes.auth_routes import bp as auth_bp
    from karmatic.routes.search_routes import bp as search_bp
    from karmatic.routes.history_routes import bp as history_bp
    app.register_blueprint(public_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(search_bp)
    app.register_blueprint(history_bp)

    @app.cli.command("init-db")
    def init_db_command():
        db.create_all()
        click.echo("Initialized the database tables.")

    @app.cli.command("cleanup-history")
    def cleanup_history_command():
        """Hard-delete search history soft-deleted past the retention period."""
        deleted = purge_deleted_history()
        click.echo(f"Cleaned up {deleted} old soft-deleted records.")

    @app.cli.command("reset-search-limit")
    @click.argument("identifier")
    def reset_search_limit_command(identifier):
        """Give an anonymous session its full search allowance back."""
        state = quota_module.build_quota_mutator().reset(identifier)
        db.session.commit()
        click.echo(f"Reset {identifier}: remaining={state.to_dict()['remaining']}")

    return app


