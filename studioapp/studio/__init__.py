# studio/__init__.py
from __future__ import annotations

import logging
import os as _os
from logging.handlers import RotatingFileHandler

import click
from flask import Flask, jsonify
from flask_wtf.csrf import CSRFError

# Shared extensions (singletons) live in studio/extensions.py
from studio.extensions import db, csrf, migrate, login_manager, limiter


def _mask_uri(uri: str) -> str:
    """Hide password in logs."""
    if "@" in uri and "://" in uri:
        head, tail = uri.split("://", 1)
        creds, rest = tail.rsplit("@", 1)
        if ":" in creds:
            user, _pwd = creds.split(":", 1)
            return f"{head}://{user}:***@{rest}"
    return uri


def _configure_logging(app: Flask) -> None:
    """stderr + rotating file (file only when APP_ERROR_LOG is set)."""
    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    stderr_handler = logging.StreamHandler()
    stderr_handler.setLevel(logging.INFO)
    stderr_handler.setFormatter(fmt)

    app.logger.handlers.clear()
    app.logger.addHandler(stderr_handler)

    log_path = app.config.get("APP_ERROR_LOG")
    if log_path:
        try:
            _os.makedirs(_os.path.dirname(log_path) or ".", exist_ok=True)
            file_handler = RotatingFileHandler(log_path, maxBytes=1_000_000, backupCount=3, encoding="utf-8")
            file_handler.setLevel(logging.INFO)
            file_handler.setFormatter(fmt)
            app.logger.addHandler(file_handler)
        except OSError as e:
            app.logger.warning(f"File logging disabled ({log_path}): {e}")

    app.logger.setLevel(logging.INFO)
    app.logger.propagate = False


def create_app(config_object=None):
    app = Flask(__name__, instance_relative_config=False)

    # ---- Base config --------------------------------------------------------
    if config_object is None:
        from studio.config import Config as config_object
    app.config.from_object(config_object)

    cfg_file = _os.getenv("APP_CONFIG_FILE")
    if cfg_file and _os.path.exists(cfg_file):
        app.config.from_pyfile(cfg_file)

    # ---- Logging (stderr + rotating file) ----------------------------------
    _configure_logging(app)

    # ---- DB / Extensions init ----------------------------------------------
    db.init_app(app)
    migrate.init_app(app, db)
    csrf.init_app(app)
    limiter.init_app(app)

    # ---- Flask-Login init ---------------------------------------------------
    login_manager.init_app(app)
    login_manager.session_protection = "strong"

    @login_manager.user_loader
    def load_user(user_id: str):
        from studio.models import User
        user = db.session.get(User, int(user_id))
        return user if user is not None and user.is_active else None

    @login_manager.unauthorized_handler
    def _unauthorized():
        return jsonify({"ok": False, "error": "auth_required"}), 401

    # ---- Models -------------------------------------------------------------
    from studio import models, models_billing  # noqa: F401

    # g.user must be set before the Sentry context hook reads it
    @app.before_request
    def _load_user():
        from studio.auth.session import load_current_user
        load_current_user()

    # ---- Monitoring ----------------------------------------------------------
    from studio.monitoring import init_sentry
    init_sentry(app)

    app.logger.info(f"Logger initialized. DB: {_mask_uri(app.config['SQLALCHEMY_DATABASE_URI'])}")

    # ---- Register blueprints -----------------------------------------------
    from studio.auth import auth_bp
    app.register_blueprint(auth_bp)
    app.logger.info("auth_bp registered")

    from studio.billing import billing_bp, webhooks_bp, stripe_webhook
    app.register_blueprint(billing_bp)
    app.register_blueprint(webhooks_bp)
    csrf.exempt(stripe_webhook)
    app.logger.info("billing_bp and webhooks_bp registered")

    from studio.admin import admin_bp, diagnostics_bp
    app.register_blueprint(admin_bp)
    app.register_blueprint(diagnostics_bp)
    app.logger.info("admin_bp registered")

    # ---- Health check --------------------------------------------------------
    @app.route("/__health__")
    @limiter.exempt
    def __health__():
        return "ok", 200

    # ---- CLI -----------------------------------------------------------------
    @app.cli.command("init-db")
    def init_db():
        """Create tables and seed the plan catalog."""
        from studio.services.plans import initialize_database
        result = initialize_database()
        click.echo(f"Database ready ({result['planCount']} plans, seeded={result['seeded']})")

    @app.cli.command("seed-plans")
    @click.option("--overwrite", is_flag=True, help="Refresh existing plans from the catalog")
    def seed_plans(overwrite):
        from studio.services.plans import seed_subscription_plans
        result = seed_subscription_plans(overwrite=overwrite)
        click.echo(f"Created: {', '.join(result['created']) or '-'}; updated: {', '.join(result['updated']) or '-'}")

    @app.cli.command("create-user")
    @click.argument("email")
    @click.argument("password")
    @click.option("--admin", is_flag=True, help="Grant the ADMIN role")
    def create_user(email, password, admin):
        from studio.models import User, ROLE_ADMIN, ROLE_USER
        user = User(email=email.strip().lower(), role=ROLE_ADMIN if admin else ROLE_USER)
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        click.echo(f"Created user {user.id} ({user.email}, role={user.role})")

    # ---- Error handlers ------------------------------------------------------
    from studio.errors import register_error_handlers
    register_error_handlers(app)

    @app.errorhandler(CSRFError)
    def handle_csrf_error(e):
        app.logger.warning(f"CSRF failed: {getattr(e, 'description', str(e))}")
        return jsonify({"ok": False, "error": "csrf_failed"}), 400

    return app


__all__ = ["create_app", "db", "csrf", "migrate", "login_manager", "limiter"]
