"""
routes/auth.py — Authentication route handlers.

Layer rules:
  - Parse request body
  - Validate with the appropriate schema (raises ValidationError on bad input)
  - Call exactly ONE service function
  - Commit the DB session
  - Set / clear credential cookies
  - Return the standard response envelope: {"data": {...}, "warnings": []}

No business logic here. No DB queries. No bare SQL.
AppError propagates to the global error handler in app/__init__.py — routes
never catch it.

Credentials travel on two channels with the same value: an HTTP-only cookie
for browsers and the JSON body for clients that cannot hold cookies.

Endpoints (url_prefix=/api/v1/auth):
  POST   /auth/register  → 201
  POST   /auth/login     → 200
  POST   /auth/refresh   → 200
  POST   /auth/logout    → 200
  GET    /auth/me        → 200
  GET    /auth/session   → 200   (optional auth)
  GET    /auth/sessions  → 200
"""

from __future__ import annotations

from flask import Blueprint, Response, g, jsonify, request

from backend.app.errors import RefreshTokenRequired
from backend.app.extensions import db
from backend.app.middleware.auth_middleware import ACCESS_COOKIE, optional_auth, require_auth
from backend.app.schemas.auth_schema import LoginSchema, RefreshTokenSchema, RegisterSchema
from backend.app.services import auth_service
from backend.app.services.credential_codec import get_auth_settings
from backend.app.services.refresh_ledger import DeviceInfo

auth_bp = Blueprint("auth", __name__)

REFRESH_COOKIE = "refresh_token"
REFRESH_PROOF_HEADER = "X-Refresh-Token"
# The refresh cookie is only ever sent back to the auth endpoints.
REFRESH_COOKIE_PATH = "/api/v1/auth"


# ── Cookie helpers ─────────────────────────────────────────────────────────

def _set_credential_cookies(response: Response, access_token: str, refresh_token: str) -> None:
    settings = get_auth_settings()
    response.set_cookie(
        ACCESS_COOKIE,
        access_token,
        max_age=int(settings.access_ttl.total_seconds()),
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite,
    )
    response.set_cookie(
        REFRESH_COOKIE,
        refresh_token,
        max_age=int(settings.refresh_ttl.total_seconds()),
        path=REFRESH_COOKIE_PATH,
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite,
    )


def _clear_credential_cookies(response: Response) -> None:
    settings = get_auth_settings()
    response.delete_cookie(
        ACCESS_COOKIE,
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite,
    )
    response.delete_cookie(
        REFRESH_COOKIE,
        path=REFRESH_COOKIE_PATH,
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite,
    )


def _session_response(result: dict, status: int):
    response = jsonify({"data": result, "warnings": []})
    _set_credential_cookies(response, result["access_token"], result["refresh_token"])
    return response, status


# ── Endpoints ──────────────────────────────────────────────────────────────

@auth_bp.route("/register", methods=["POST"])
def register():
    """POST /auth/register — Create account; return tokens. (No auth required.)"""
    data = RegisterSchema().load(request.get_json(silent=True) or {})
    result = auth_service.register_user(
        email=data["email"],
        password=data["password"],
        name=data["name"],
        device_info=DeviceInfo.from_request(request),
        session=db.session,
    )
    db.session.commit()
    return _session_response(result, 201)


@auth_bp.route("/login", methods=["POST"])
def login():
    """POST /auth/login — Authenticate; return tokens. (No auth required.)"""
    data = LoginSchema().load(request.get_json(silent=True) or {})
    result = auth_service.login_user(
        email=data["email"],
        password=data["password"],
        device_info=DeviceInfo.from_request(request),
        session=db.session,
    )
    db.session.commit()
    return _session_response(result, 200)


@auth_bp.route("/refresh", methods=["POST"])
def refresh():
    """POST /auth/refresh — Rotate a refresh token into a new token pair."""
    data = RefreshTokenSchema().load(request.get_json(silent=True) or {})
    # An explicit body value wins over the cookie jar's copy.
    raw_token = data["refresh_token"] or request.cookies.get(REFRESH_COOKIE)
    if not raw_token:
        raise RefreshTokenRequired(field="refresh_token")

    result = auth_service.rotate_session(
        raw_refresh_token=raw_token,
        device_info=DeviceInfo.from_request(request),
        session=db.session,
    )
    db.session.commit()
    return _session_response(result, 200)


@auth_bp.route("/logout", methods=["POST"])
@require_auth
def logout():
    """
    POST /auth/logout — Clear credential cookies. (Auth required.)

    When an X-Refresh-Token proof is supplied, every refresh token of the
    user is revoked as well (best-effort; the cookies are cleared regardless).
    """
    revoked = auth_service.logout_user(
        user_id=g.user_id,
        refresh_proof=request.headers.get(REFRESH_PROOF_HEADER),
        session=db.session,
    )
    db.session.commit()
    response = jsonify({
        "data": {"message": "Logged out successfully.", "revoked": revoked},
        "warnings": [],
    })
    _clear_credential_cookies(response)
    return response, 200


@auth_bp.route("/me", methods=["GET"])
@require_auth
def me():
    """GET /auth/me — Return current user profile. (Auth required.)"""
    result = auth_service.get_current_user(g.user)
    return jsonify({"data": {"user": result}, "warnings": []}), 200


@auth_bp.route("/session", methods=["GET"])
@optional_auth
def session_status():
    """GET /auth/session — Report whether the caller is logged in. (Auth optional.)"""
    user = g.user
    return jsonify({
        "data": {
            "authenticated": user is not None,
            "user": auth_service.get_current_user(user) if user is not None else None,
        },
        "warnings": [],
    }), 200


@auth_bp.route("/sessions", methods=["GET"])
@require_auth
def sessions():
    """GET /auth/sessions — List the user's active refresh sessions. (Auth required.)"""
    result = auth_service.list_active_sessions(user_id=g.user_id, session=db.session)
    return jsonify({"data": {"sessions": result}, "warnings": []}), 200
