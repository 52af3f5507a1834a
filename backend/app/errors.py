"""
errors.py — AppError hierarchy and error code registry.

Every error returned by the SpendWise API must use a code defined here.
Do not raise strings or generic exceptions from service or route code.

Each failure kind is its own AppError subclass carrying its HTTP status and
default code. Callers match on the class (`except InvalidRefreshToken:`),
never on the code string. The code is what goes over the wire.

Rules:
  - New error codes require: add constant here + add a test
  - Error codes are a versioned contract. They do not change once published.
  - Error messages are human-readable prose. They may be improved at any time.
  - Never conflate 401 (unauthenticated) with 403 (unauthorized).
"""

from __future__ import annotations


# ── Error Code Registry ────────────────────────────────────────────────────
#
# Organised by category. HTTP status is indicated in the comment.
#
# IMPORTANT: these are the string values sent in the API response.
# Do not rename them without a major version bump.
# ──────────────────────────────────────────────────────────────────────────

class ErrorCode:

    # ── Schema / Input Errors (400) ────────────────────────────────────────
    MISSING_FIELD              = "MISSING_FIELD"
    INVALID_FIELD              = "INVALID_FIELD"
    REFRESH_TOKEN_REQUIRED     = "REFRESH_TOKEN_REQUIRED"

    # ── Conflict Errors (409) ──────────────────────────────────────────────
    EMAIL_EXISTS               = "EMAIL_EXISTS"

    # ── Auth Errors (401) ──────────────────────────────────────────────────
    # 401 = we do not know who you are (unauthenticated)
    INVALID_CREDENTIALS        = "INVALID_CREDENTIALS"
    TOKEN_MISSING              = "TOKEN_MISSING"
    TOKEN_INVALID              = "TOKEN_INVALID"
    TOKEN_EXPIRED              = "TOKEN_EXPIRED"
    USER_NOT_FOUND             = "USER_NOT_FOUND"
    INVALID_REFRESH_TOKEN      = "INVALID_REFRESH_TOKEN"
    REFRESH_TOKEN_EXPIRED      = "REFRESH_TOKEN_EXPIRED"

    # ── System Errors (500) ────────────────────────────────────────────────
    INTERNAL_ERROR             = "INTERNAL_ERROR"


class AppError(Exception):

    http_status: int = 500
    default_code: str = ErrorCode.INTERNAL_ERROR
    default_message: str = "An unexpected error occurred."

    def __init__(
            self,
            message: str | None = None,
            code: str | None = None,
            field: str | None = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.code    = code or self.default_code
        self.message = message
        self.field   = field  # which request field caused the error

    def to_dict(self) -> dict:
        payload = {
            "code":    self.code,
            "message": self.message,
        }
        if self.field is not None:
            payload["field"] = self.field
        return {"error": payload}

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(code={self.code!r}, "
            f"http_status={self.http_status}, "
            f"message={self.message!r})"
        )


# ── Taxonomy ───────────────────────────────────────────────────────────────

class Unauthenticated(AppError):
    """No access credential, or one that is invalid, expired, or stale.

    The code distinguishes TOKEN_MISSING / TOKEN_INVALID / TOKEN_EXPIRED /
    USER_NOT_FOUND so clients can tell "refresh and retry" from "log in".
    """

    http_status = 401
    default_code = ErrorCode.TOKEN_INVALID
    default_message = "Authentication required. Please log in."


class InvalidRefreshToken(AppError):
    """Refresh credential is malformed, unknown, or already revoked."""

    http_status = 401
    default_code = ErrorCode.INVALID_REFRESH_TOKEN
    default_message = "The refresh token is invalid or has been revoked."


class RefreshTokenExpired(AppError):
    """Refresh credential was found in the ledger but is past its expiry."""

    http_status = 401
    default_code = ErrorCode.REFRESH_TOKEN_EXPIRED
    default_message = "The refresh token has expired. Please log in again."


class RefreshTokenRequired(AppError):
    http_status = 400
    default_code = ErrorCode.REFRESH_TOKEN_REQUIRED
    default_message = "A refresh token must be supplied as a cookie or in the request body."


class EmailExists(AppError):
    http_status = 409
    default_code = ErrorCode.EMAIL_EXISTS
    default_message = "An account with this email address already exists."


class InvalidCredentials(AppError):
    """Wrong email or wrong password. Deliberately does not say which."""

    http_status = 401
    default_code = ErrorCode.INVALID_CREDENTIALS
    default_message = "The email or password is incorrect."


class ValidationFailed(AppError):
    http_status = 400
    default_code = ErrorCode.INVALID_FIELD
    default_message = "Invalid input."
