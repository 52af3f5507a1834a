"""
services/auth_service.py — Authentication business logic.

Responsibilities:
  - User registration and credential validation
  - Issuing an access + refresh credential pair (SessionIssuer)
  - Rotating a refresh credential into a new pair (SessionRefresher)
  - Logout revocation and the current-user / device-session views

Layer rules:
  - No imports from routes or schemas
  - No use of flask.request, flask.g, or HTTP status codes; device info is
    passed in as a DeviceInfo value
  - current_app is used ONLY for the logger and the validated AuthSettings
  - Commit is the route's job. The single exception is the expired-refresh
    branch of rotate_session(), which must persist a revocation and then raise.

Credential design:
  - Access credential: JWT signed with the access secret, 15 min TTL.
  - Refresh credential: JWT signed with the refresh secret, one-time use.
    The ledger stores only its keyed hash. Every successful refresh revokes
    the presented record and issues a successor in the same transaction.

Failure policy:
  - Identity failures (duplicate email, bad password) are raised as AppError
    subclasses.
  - Ledger write failures and the last-login stamp are housekeeping: logged,
    never raised, because a user must still be able to authenticate.
"""

from __future__ import annotations

from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, defer

from backend.app.errors import (
    EmailExists,
    ErrorCode,
    InvalidCredentials,
    InvalidRefreshToken,
    RefreshTokenExpired,
    Unauthenticated,
)
from backend.app.models.user import User
from backend.app.services.credential_codec import (
    CredentialCodec,
    CredentialError,
    access_codec,
    get_auth_settings,
    refresh_codec,
)
from backend.app.services.refresh_ledger import DeviceInfo, RefreshLedger


# ── Private helpers ────────────────────────────────────────────────────────

def _ledger(session: Session, codec: CredentialCodec) -> RefreshLedger:
    return RefreshLedger(session, codec, window=get_auth_settings().refresh_ttl)


def _issue_refresh_record(
        ledger: RefreshLedger,
        user_id: int,
        raw_token: str,
        device_info: DeviceInfo,
) -> None:
    """Persists a refresh record; a write failure is logged, not raised."""
    try:
        ledger.issue(user_id, raw_token, device_info)
    except SQLAlchemyError:
        current_app.logger.error(
            "Failed to save refresh token for user %s", user_id, exc_info=True,
        )


def _stamp_last_login(user: User, session: Session) -> None:
    try:
        with session.begin_nested():
            user.last_login_at = datetime.now(timezone.utc)
    except SQLAlchemyError:
        current_app.logger.warning(
            "Could not update last login for user %s", user.id, exc_info=True,
        )


# ── SessionIssuer ──────────────────────────────────────────────────────────

def issue_session(user: User, device_info: DeviceInfo, session: Session) -> dict:
    """
    Mints an access + refresh pair for an already-authenticated user.

    Returns: {"user": {...}, "access_token": "...", "refresh_token": "..."}
    """
    access = access_codec().sign(user.id)
    codec = refresh_codec()
    refresh = codec.sign(user.id)

    _issue_refresh_record(_ledger(session, codec), user.id, refresh, device_info)
    _stamp_last_login(user, session)

    current_app.logger.debug("Issued session for user %s", user.id)

    return {
        "user": user.get_public_profile(),
        "access_token": access,
        "refresh_token": refresh,
    }


def register_user(
        email: str,
        password: str,
        name: str,
        device_info: DeviceInfo,
        session: Session,
) -> dict:
    """
    Creates a new user account and issues a credential pair.

    Raises:
      EmailExists (409) — email already registered

    Returns: {"user": {...}, "access_token": "...", "refresh_token": "..."}
    """
    existing = session.execute(
        select(User.id).where(User.email == email)
    ).scalar_one_or_none()
    if existing is not None:
        raise EmailExists(field="email")

    user = User(email=email, name=name)
    user.set_password(password, rounds=current_app.config.get("BCRYPT_LOG_ROUNDS", 12))

    try:
        with session.begin_nested():
            session.add(user)  # flush populates user.id
    except IntegrityError:
        # Lost a race with a concurrent registration for the same email.
        raise EmailExists(field="email")

    return issue_session(user, device_info, session)


def login_user(
        email: str,
        password: str,
        device_info: DeviceInfo,
        session: Session,
) -> dict:
    """
    Validates credentials and issues a new credential pair.

    Raises:
      InvalidCredentials (401) — email not found or password wrong.
      Uses the same error for both to avoid account enumeration.
    """
    user = session.execute(
        select(User).where(User.email == email)
    ).scalar_one_or_none()

    if user is None:
        current_app.logger.debug("Login rejected: no matching account")
        raise InvalidCredentials()
    if not user.verify_password(password):
        current_app.logger.debug("Login rejected for user %s: wrong password", user.id)
        raise InvalidCredentials()

    return issue_session(user, device_info, session)


# ── SessionRefresher ───────────────────────────────────────────────────────

def rotate_session(
        raw_refresh_token: str,
        device_info: DeviceInfo,
        session: Session,
) -> dict:
    """
    Exchanges a refresh credential for a new access + refresh pair.

    The presented record is revoked with a conditional UPDATE before its
    successor is written, so of two concurrent rotations of the same token
    exactly one succeeds.

    Raises:
      InvalidRefreshToken (401) — bad signature/structure, not in the ledger,
                                  already revoked, or lost a rotation race
      RefreshTokenExpired (401) — in the ledger but past expires_at

    Returns: {"access_token": "...", "refresh_token": "..."}
    """
    codec = refresh_codec()
    try:
        user_id = codec.verify(raw_refresh_token)
    except CredentialError as exc:
        current_app.logger.info("Refresh token rejected: %s", exc)
        raise InvalidRefreshToken()

    ledger = _ledger(session, codec)
    record = ledger.find_active(user_id, raw_refresh_token)

    if record is None:
        previous = ledger.find_by_token(raw_refresh_token)
        if previous is not None and previous.revoked:
            current_app.logger.warning(
                "Refresh token reuse detected for user %s (record %s)",
                user_id, previous.id,
            )
        raise InvalidRefreshToken()

    if record.is_expired():
        ledger.revoke(record)
        session.commit()
        raise RefreshTokenExpired()

    if not ledger.revoke(record):
        current_app.logger.warning(
            "Concurrent rotation of refresh record %s for user %s", record.id, user_id,
        )
        raise InvalidRefreshToken()

    new_refresh = codec.sign(user_id)
    _issue_refresh_record(ledger, user_id, new_refresh, device_info)

    current_app.logger.debug("Rotated refresh token for user %s", user_id)

    return {
        "access_token": access_codec().sign(user_id),
        "refresh_token": new_refresh,
    }


# ── Logout / session views ─────────────────────────────────────────────────

def logout_user(
        user_id: int,
        refresh_proof: str | None,
        session: Session,
) -> int:
    """
    Revokes every refresh record of `user_id` when `refresh_proof` is a valid
    refresh credential for that same user.

    Best-effort: a missing or bad proof, or a ledger failure, is logged and
    yields 0. Never raises.

    Returns: number of records revoked.
    """
    if not refresh_proof:
        return 0

    codec = refresh_codec()
    try:
        proof_user_id = codec.verify(refresh_proof)
    except CredentialError as exc:
        current_app.logger.debug("Logout refresh proof ignored: %s", exc)
        return 0

    if proof_user_id != user_id:
        current_app.logger.warning(
            "Logout refresh proof for user %s presented by user %s",
            proof_user_id, user_id,
        )
        return 0

    try:
        with session.begin_nested():
            revoked = _ledger(session, codec).revoke_all(user_id)
    except SQLAlchemyError:
        current_app.logger.error(
            "Could not revoke refresh tokens for user %s", user_id, exc_info=True,
        )
        return 0

    current_app.logger.debug("Revoked %d refresh tokens for user %s", revoked, user_id)
    return revoked


def get_current_user(user: User) -> dict:
    return user.get_public_profile()


def list_active_sessions(user_id: int, session: Session) -> list[dict]:
    """Unrevoked, unexpired refresh records for the device list, newest first."""
    ledger = _ledger(session, refresh_codec())
    return [record.to_session_dict() for record in ledger.active_sessions(user_id)]


def load_user(user_id: int, session: Session) -> User:
    """
    Resolves the subject of a verified access credential.

    Raises:
      Unauthenticated(USER_NOT_FOUND) — the user was deleted after the token
        was issued. Reported as 401 so the client logs in again.
    """
    user = session.execute(
        select(User).options(defer(User.password_hash)).where(User.id == user_id)
    ).scalar_one_or_none()
    if user is None:
        raise Unauthenticated(
            "User not found. Please log in again.",
            code=ErrorCode.USER_NOT_FOUND,
        )
    return user
