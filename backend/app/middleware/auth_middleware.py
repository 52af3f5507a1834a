"""
middleware/auth_middleware.py — Access-credential authentication decorators.

@require_auth:
  1. Reads the access token from an "Authorization: Bearer <token>" header,
     falling back to the HTTP-only `token` cookie set at login
  2. Verifies signature, expiry and token type with the access codec
  3. Loads the user (password hash deferred)
  4. Attaches the user and user_id to flask.g for the duration of the request
  5. Raises Unauthenticated with the appropriate code if any step fails

@optional_auth runs the same steps but lets the request through anonymously
(g.user = g.user_id = None) instead of rejecting it.

Error codes (all 401, all Unauthenticated):
  TOKEN_MISSING  — no Authorization header and no cookie
  TOKEN_INVALID  — malformed header, bad signature, wrong type, bad payload
  TOKEN_EXPIRED  — valid token but exp claim is in the past
  USER_NOT_FOUND — token refers to a user that no longer exists
"""

from __future__ import annotations

import functools
from typing import Callable

from flask import current_app, g, request

from backend.app.errors import ErrorCode, Unauthenticated
from backend.app.extensions import db
from backend.app.models.user import User
from backend.app.services.auth_service import load_user
from backend.app.services.credential_codec import TokenExpired, TokenMalformed, access_codec

ACCESS_COOKIE = "token"


def require_auth(f: Callable) -> Callable:
    """
    Route decorator that enforces access-credential authentication.

    Raises Unauthenticated for all auth failures — the global error handler
    converts these to the correct JSON response. Routes never catch AppError.

    Usage:
        @auth_bp.route("/me")
        @require_auth
        def me():
            user = g.user  # always a User when this runs
            ...
    """
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        authenticate()
        return f(*args, **kwargs)

    return decorated


def optional_auth(f: Callable) -> Callable:
    """Route decorator that attaches the user when possible and never rejects."""
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        try:
            authenticate()
        except Unauthenticated as exc:
            current_app.logger.debug("Optional auth: continuing anonymously (%s)", exc.code)
            g.user = None
            g.user_id = None
        return f(*args, **kwargs)

    return decorated


def authenticate() -> User:
    """
    Performs the full authentication sequence and sets flask.g.user/user_id.

    Separated from the decorators for testability — can be called directly
    inside a test request context.
    """
    raw_token = _extract_token()

    try:
        user_id = access_codec().verify(raw_token)
    except TokenExpired:
        # Client should use POST /auth/refresh.
        raise Unauthenticated(
            "The access token has expired. Use POST /auth/refresh to obtain a new one.",
            code=ErrorCode.TOKEN_EXPIRED,
        )
    except TokenMalformed:
        raise Unauthenticated(
            "The access token is invalid or has been tampered with.",
            code=ErrorCode.TOKEN_INVALID,
        )

    user = load_user(user_id, db.session)

    g.user = user
    g.user_id = user.id
    return user


def _extract_token() -> str:
    # An explicit header wins over the cookie jar's copy.
    auth_header = request.headers.get("Authorization", "")
    if auth_header:
        parts = auth_header.split()
        if len(parts) != 2 or parts[0].lower() != "bearer":
            raise Unauthenticated(
                "Authorization header must be in the format: Bearer <token>.",
                code=ErrorCode.TOKEN_INVALID,
            )
        return parts[1]

    token = request.cookies.get(ACCESS_COOKIE)
    if not token:
        raise Unauthenticated(
            "Authentication required. Please log in.",
            code=ErrorCode.TOKEN_MISSING,
        )
    return token
