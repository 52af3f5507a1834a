"""
app/__init__.py — Flask application factory.

Pattern: create_app(config_name) creates and returns a configured Flask app.
         Nothing is initialised at import time — this enables:
           - Multiple isolated test app instances
           - Clean separation between app creation and app startup
           - `flask db migrate` to work without starting the full server

Responsibilities:
  1. Load configuration from config_by_name[config_name]
  2. Build and validate AuthSettings (fails fast on missing secrets)
  3. Initialise extensions (SQLAlchemy, Marshmallow) via init_app()
  4. Register the auth blueprint under /api/v1/auth
  5. Register global error handlers (AppError → JSON, Exception → 500)
  6. Register the `sweep-refresh-tokens` CLI command and, when configured,
     run the ledger sweep once at startup

Note on model imports:
  All model classes are imported inside create_app() so that SQLAlchemy's
  metadata is populated before Alembic inspects it. They are not used
  directly here — the import side-effect is sufficient.
"""

from __future__ import annotations

import traceback

import click
from flask import Flask, jsonify
from marshmallow import ValidationError
from werkzeug.exceptions import HTTPException

from backend.config import AuthSettings, config_by_name, validate_production_config


# ── Application factory ────────────────────────────────────────────────────

def create_app(config_name: str = "development", **overrides) -> Flask:
    """
    Creates and returns a configured Flask application instance.

    Args:
        config_name: One of "development", "testing", "production".
                     Resolved via config_by_name in config.py.
                     Defaults to "development".
        overrides:   Extra config values applied after the config class,
                     before validation. Used by tests.

    Returns:
        A fully configured Flask app ready to serve requests.

    Raises:
        ValueError: a security-sensitive setting is missing or invalid.
    """
    app = Flask(__name__)

    # ── Configuration ──────────────────────────────────────────────────────
    config_class = config_by_name.get(config_name, config_by_name["development"])
    app.config.from_object(config_class)
    app.config.update(overrides)

    if config_name == "production":
        validate_production_config(app)  # raises ValueError if misconfigured

    app.extensions["auth_settings"] = AuthSettings.from_mapping(app.config)

    # ── Extensions ─────────────────────────────────────────────────────────
    # Import here (not at module top) to avoid circular imports.
    from backend.app.extensions import db, ma
    db.init_app(app)
    ma.init_app(app)

    # ── Model registration ─────────────────────────────────────────────────
    with app.app_context():
        from backend.app.models import refresh_token, user  # noqa: F401

    _register_blueprints(app)
    _register_error_handlers(app)
    _register_commands(app)

    if app.config.get("SWEEP_REFRESH_TOKENS_ON_STARTUP"):
        from backend.app.services.refresh_ledger import run_startup_sweep
        run_startup_sweep(app)

    return app


def _register_blueprints(app: Flask) -> None:
    """
    Registers route blueprints under the /api/v1 prefix.

    The url_prefix is set here so individual route files only specify
    the path relative to their resource.
    """
    from backend.app.routes.auth import auth_bp

    app.register_blueprint(auth_bp, url_prefix="/api/v1/auth")


def _register_error_handlers(app: Flask) -> None:
    """
    Registers global error handlers.

    Handlers:
      AppError        → structured JSON error envelope with the class's HTTP status
      ValidationError → marshmallow schema errors formatted as MISSING_FIELD /
                        INVALID_FIELD responses (400)
      HTTPException   → werkzeug errors (404, 405, ...) in the same envelope
      Exception       → generic INTERNAL_ERROR (500); full traceback logged

    Stack traces never leave the server.
    """
    from backend.app.errors import AppError, ErrorCode, ValidationFailed

    @app.errorhandler(AppError)
    def handle_app_error(error: AppError):
        """
        Converts an AppError raised anywhere in the request lifecycle
        (middleware, service, route) into the standard error envelope.

        Routes never catch AppError — they let it propagate here.
        """
        app.logger.debug("Request failed: %r", error)
        return jsonify(error.to_dict()), error.http_status

    @app.errorhandler(ValidationError)
    def handle_validation_error(error: ValidationError):
        """
        Converts marshmallow ValidationError into the standard error envelope.

        Only the FIRST field error is reported ("one error, not many").
        """
        messages = error.messages  # e.g. {"email": ["Not a valid email address."]}

        field = None
        raw_message = "Invalid input."
        code = ErrorCode.INVALID_FIELD

        if isinstance(messages, dict) and messages:
            field_name, field_errors = next(iter(messages.items()))
            field = field_name if field_name != "_schema" else None
            if isinstance(field_errors, list):
                raw_message = field_errors[0] if field_errors else "Invalid value."
            else:
                raw_message = str(field_errors)
        elif isinstance(messages, list) and messages:
            raw_message = messages[0]

        if str(raw_message).startswith("Missing data for required field"):
            code = ErrorCode.MISSING_FIELD

        failure = ValidationFailed(str(raw_message), code=code, field=field)
        return jsonify(failure.to_dict()), failure.http_status

    @app.errorhandler(HTTPException)
    def handle_http_exception(error: HTTPException):
        return jsonify({
            "error": {
                "code": (error.name or "HTTP_ERROR").upper().replace(" ", "_"),
                "message": error.description,
            }
        }), error.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        """
        Catches all unhandled exceptions and returns a generic 500 response.

        The full traceback is logged to the application logger. Stack traces
        NEVER leave the server in the response body.
        """
        app.logger.error(
            "Unhandled exception: %s\n%s",
            str(error),
            traceback.format_exc(),
        )
        return jsonify({
            "error": {
                "code": ErrorCode.INTERNAL_ERROR,
                "message": "An unexpected error occurred. Please try again later.",
            }
        }), 500


def _register_commands(app: Flask) -> None:

    @app.cli.command("sweep-refresh-tokens")
    def sweep_refresh_tokens():
        """Delete expired and revoked refresh tokens."""
        from backend.app.services.refresh_ledger import run_startup_sweep

        deleted = run_startup_sweep(app)
        click.echo(f"Deleted {deleted} refresh token(s).")
