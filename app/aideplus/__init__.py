import logging
import os

from dotenv import load_dotenv
from flask import Flask, g, jsonify
from werkzeug.exceptions import HTTPException

from app.aideplus.config import load_config
from app.aideplus.db import init_db, teardown_db_session
from app.aideplus import models  # noqa: F401  registers every table before blueprints import services
from app.aideplus.errors import EngineError, Forbidden, ServiceUnavailable
from app.aideplus.routes import bp as routes_bp
from app.aideplus.auth import bp as auth_bp, load_request_context
from app.aideplus.account import bp as account_bp
from app.aideplus.admin import bp as audit_bp
from app.aideplus.captcha import captcha_from_config
from app.aideplus.identity import identity_provider_from_config
from app.aideplus.modules.admins.admin import bp as admins_bp
from app.aideplus.modules.promo_codes.admin import bp as promo_codes_bp
from app.aideplus.modules.subscriptions.admin import bp as subscriptions_bp
from app.aideplus.modules.subscriptions.payments import payment_provider_from_config
from app.aideplus.modules.subscriptions.webhooks import bp as webhooks_bp
from app.aideplus.modules.usage.admin import bp as usage_bp

logger = logging.getLogger(__name__)


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")
        if not app.config.get("SUPABASE_URL") or not app.config.get("SUPABASE_ANON_KEY"):
            raise RuntimeError("SUPABASE_URL and SUPABASE_ANON_KEY are required in production.")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    # Upstream collaborators; tests replace these entries with fakes.
    app.extensions["identity_provider"] = identity_provider_from_config(app.config)
    app.extensions["captcha_verifier"] = captcha_from_config(app.config)
    app.extensions["payment_provider"] = payment_provider_from_config(app.config)
    if app.extensions["captcha_verifier"] is None:
        app.logger.info("hCaptcha not configured; admin login captcha check disabled")
    if app.extensions["payment_provider"] is None:
        app.logger.info("Stripe not configured; cancellations are applied locally only")

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(account_bp, url_prefix="/api/me")
    app.register_blueprint(admins_bp, url_prefix="/admin")
    app.register_blueprint(subscriptions_bp, url_prefix="/admin")
    app.register_blueprint(promo_codes_bp, url_prefix="/admin")
    app.register_blueprint(usage_bp, url_prefix="/admin")
    app.register_blueprint(audit_bp, url_prefix="/admin")
    app.register_blueprint(webhooks_bp, url_prefix="/webhooks")

    app.before_request(load_request_context)
    app.teardown_appcontext(teardown_db_session)

    def _rollback() -> None:
        s = getattr(g, "db_session", None)
        if s is not None:
            s.rollback()

    @app.errorhandler(EngineError)
    def _engine_error(e: EngineError):
        _rollback()
        rid = getattr(g, "request_id", None)
        if isinstance(e, ServiceUnavailable):
            app.logger.error("Upstream unavailable: %s (request_id=%s)", e.message, rid)
        elif isinstance(e, Forbidden) and e.extra.get("missing_permission"):
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", e.extra["missing_permission"], rid)
        body = e.to_dict()
        body["request_id"] = rid
        return jsonify(body), e.status_code

    @app.errorhandler(HTTPException)
    def _http_error(e: HTTPException):
        _rollback()
        code = (e.name or "error").lower().replace(" ", "_")
        return jsonify({"error": code, "message": e.description, "request_id": getattr(g, "request_id", None)}), e.code

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        _rollback()
        rid = getattr(g, "request_id", None)
        app.logger.exception("Unhandled 500 (request_id=%s)", rid)
        return jsonify({"error": "internal_error", "message": "Internal error.", "request_id": rid}), 500

    logger.info("create_app() complete; app ready to serve")

    return app
