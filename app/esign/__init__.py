import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request
from werkzeug.exceptions import HTTPException

from app.esign.config import load_config
from app.esign.db import init_db, teardown_db_session
from app.esign.errors import PersistenceFault, SigningError
from app.esign.routes import bp as routes_bp
from app.esign.auth import bp as auth_bp, load_current_user
from app.esign.modules.signing.api import bp as signing_bp


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

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

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/api/auth")
    app.register_blueprint(signing_bp, url_prefix="/api/documents")

    app.before_request(load_current_user)

    @app.before_request
    def _csrf_guard():
        from app.esign.security import validate_csrf

        if request.method not in ("POST", "PUT", "PATCH", "DELETE"):
            return None
        # Auth endpoints issue the session; bearer callers are not exposed to CSRF.
        if (request.endpoint or "").startswith("auth."):
            return None
        if getattr(g, "auth_via", None) != "session":
            return None
        if not validate_csrf(request):
            return jsonify(error="CSRF token missing or invalid."), 400
        return None

    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(SigningError)
    def _err_signing(e: SigningError):  # type: ignore[no-redef]
        body = {"error": e.message}
        if isinstance(e, PersistenceFault):
            app.logger.error("Persistence fault (request_id=%s): %s", getattr(g, "request_id", None), e.detail)
            if app.config.get("DEBUG_ERRORS") and e.detail:
                body["detail"] = e.detail
        else:
            app.logger.info(
                "%s on %s (request_id=%s): %s",
                type(e).__name__,
                request.path,
                getattr(g, "request_id", None),
                e.message,
            )
        return jsonify(body), e.status_code

    @app.errorhandler(HTTPException)
    def _err_http(e: HTTPException):  # type: ignore[no-redef]
        return jsonify(error=e.description or e.name), e.code or 500

    @app.errorhandler(Exception)
    def _err_500(e: Exception):  # type: ignore[no-redef]
        # Ensure stack trace shows in logs.
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        body = {"error": "Internal server error."}
        if app.config.get("DEBUG_ERRORS"):
            body["detail"] = f"{type(e).__name__}: {e}"
        return jsonify(body), 500

    # Startup logging
    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
