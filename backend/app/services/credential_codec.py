"""
services/credential_codec.py — Signing and verification of credentials.

Access and refresh credentials are both HS256 JWTs, but each kind is signed
with its own secret and stamped with its own `typ` claim, so neither can be
presented in place of the other.

Payload: sub (user_id as str), iat, exp, jti, typ. Timestamps are whole
seconds; exp is rounded up so a credential never reads as expired before
issued_at + ttl.

verify() distinguishes an expired credential (TokenExpired) from one that is
forged or garbled (TokenMalformed). Callers map those onto the HTTP error
taxonomy in app/errors.py; this module knows nothing about HTTP.
"""

from __future__ import annotations

import hashlib
import hmac
import math
import secrets
from datetime import datetime, timedelta, timezone

import jwt
from flask import current_app

from backend.config import AuthSettings

ACCESS = "access"
REFRESH = "refresh"


class CredentialError(Exception):
    """Base class for credential verification failures."""


class TokenExpired(CredentialError):
    pass


class TokenMalformed(CredentialError):
    pass


class CredentialCodec:

    def __init__(
            self,
            secret: str,
            ttl: timedelta,
            token_type: str,
            algorithm: str = "HS256",
    ) -> None:
        if not secret:
            raise ValueError("A signing secret is required.")
        self._secret = secret
        self.ttl = ttl
        self.token_type = token_type
        self.algorithm = algorithm

    def sign(
            self,
            subject_id: int,
            ttl: timedelta | None = None,
            now: datetime | None = None,
    ) -> str:
        """Returns a signed token for `subject_id` expiring at now + ttl."""
        now = now or datetime.now(timezone.utc)
        expires = now + (ttl if ttl is not None else self.ttl)
        payload = {
            "sub": str(subject_id),
            "iat": int(now.timestamp()),
            "exp": math.ceil(expires.timestamp()),
            # Two tokens minted in the same second must still differ.
            "jti": secrets.token_hex(8),
            "typ": self.token_type,
        }
        return jwt.encode(payload, self._secret, algorithm=self.algorithm)

    def verify(self, token: str) -> int:
        """
        Checks signature, expiry and token type; returns the subject id.

        Raises:
          TokenExpired   — signature valid but exp has passed
          TokenMalformed — anything else: bad signature, bad structure,
                           wrong typ, missing or non-integer sub
        """
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self.algorithm],
                options={"require": ["exp", "iat", "sub"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise TokenExpired(str(exc)) from exc
        except jwt.InvalidTokenError as exc:
            raise TokenMalformed(str(exc)) from exc

        if payload.get("typ") != self.token_type:
            raise TokenMalformed(f"Expected a {self.token_type} token.")

        try:
            return int(payload["sub"])
        except (TypeError, ValueError) as exc:
            raise TokenMalformed("The 'sub' claim is not a valid user ID.") from exc

    def hash_token(self, raw_token: str) -> str:
        """Keyed HMAC-SHA256 hex digest of a raw token, for ledger storage."""
        return hmac.new(
            self._secret.encode("utf-8"),
            raw_token.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()


# ── Factories bound to the running app ─────────────────────────────────────

def get_auth_settings() -> AuthSettings:
    """Returns the AuthSettings validated by create_app()."""
    return current_app.extensions["auth_settings"]


def access_codec(settings: AuthSettings | None = None) -> CredentialCodec:
    settings = settings or get_auth_settings()
    return CredentialCodec(
        settings.access_secret, settings.access_ttl, ACCESS, settings.algorithm,
    )


def refresh_codec(settings: AuthSettings | None = None) -> CredentialCodec:
    settings = settings or get_auth_settings()
    return CredentialCodec(
        settings.refresh_secret, settings.refresh_ttl, REFRESH, settings.algorithm,
    )
