"""
services/refresh_ledger.py — Persistence of issued refresh credentials.

The ledger is the only code that reads or writes refresh_tokens rows.
Session services call it; they never touch RefreshToken directly.

Storage rules:
  - Only CredentialCodec.hash_token(raw) is stored, never the raw token.
  - expires_at is set once, at insert.
  - revoked only ever goes false -> true, via a conditional UPDATE so that two
    concurrent rotations of the same token cannot both succeed.
  - Rows leave the table only through sweep().

Commit is the caller's job; the ledger flushes.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from flask import Flask
from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm import Session

from backend.app.models.refresh_token import RefreshToken
from backend.app.services.credential_codec import CredentialCodec

DEFAULT_WINDOW = timedelta(days=7)


@dataclass(frozen=True)
class DeviceInfo:
    user_agent: str = "Unknown"
    ip_address: str = "Unknown"

    @classmethod
    def from_request(cls, request) -> "DeviceInfo":
        return cls(
            user_agent=(request.headers.get("User-Agent") or "Unknown")[:512],
            ip_address=(request.remote_addr or "Unknown")[:64],
        )


class RefreshLedger:

    def __init__(
            self,
            session: Session,
            codec: CredentialCodec,
            window: timedelta = DEFAULT_WINDOW,
    ) -> None:
        self.session = session
        self.codec = codec
        self.window = window

    def issue(
            self,
            user_id: int,
            raw_token: str,
            device_info: DeviceInfo | None = None,
    ) -> RefreshToken:
        """
        Inserts an unrevoked record for `raw_token`.

        Runs inside a SAVEPOINT so that a failed insert leaves the caller's
        transaction usable. Raises SQLAlchemyError on failure; whether that is
        fatal is the caller's decision.
        """
        device_info = device_info or DeviceInfo()
        record = RefreshToken(
            user_id=user_id,
            token_hash=self.codec.hash_token(raw_token),
            expires_at=datetime.now(timezone.utc) + self.window,
            revoked=False,
            user_agent=device_info.user_agent,
            ip_address=device_info.ip_address,
        )
        with self.session.begin_nested():
            self.session.add(record)
        return record

    def find_active(self, user_id: int, raw_token: str | None = None) -> RefreshToken | None:
        """
        Returns the newest unrevoked record for `user_id`.

        Expired records are returned too so that the caller can tell "expired"
        from "unknown". With `raw_token` the match is narrowed to that exact
        credential, which keeps each device's rotation chain independent.
        """
        stmt = select(RefreshToken).where(
            RefreshToken.user_id == user_id,
            RefreshToken.revoked.is_(False),
        )
        if raw_token is not None:
            stmt = stmt.where(RefreshToken.token_hash == self.codec.hash_token(raw_token))
        stmt = stmt.order_by(RefreshToken.id.desc()).limit(1)
        return self.session.execute(stmt).scalar_one_or_none()

    def find_by_token(self, raw_token: str) -> RefreshToken | None:
        """Looks a credential up regardless of its state."""
        return self.session.execute(
            select(RefreshToken).where(
                RefreshToken.token_hash == self.codec.hash_token(raw_token)
            )
        ).scalar_one_or_none()

    def revoke(self, record: RefreshToken) -> bool:
        """
        Marks `record` revoked. Returns True only for the caller whose UPDATE
        flipped the flag; a second call (or a losing racer) gets False.
        """
        result = self.session.execute(
            update(RefreshToken)
            .where(RefreshToken.id == record.id, RefreshToken.revoked.is_(False))
            .values(revoked=True)
            .execution_options(synchronize_session=False)
        )
        self.session.refresh(record, attribute_names=["revoked"])
        return result.rowcount == 1

    def revoke_all(self, user_id: int) -> int:
        """Revokes every unrevoked record for `user_id`; returns how many."""
        result = self.session.execute(
            update(RefreshToken)
            .where(RefreshToken.user_id == user_id, RefreshToken.revoked.is_(False))
            .values(revoked=True)
            .execution_options(synchronize_session=False)
        )
        self.session.expire_all()
        return result.rowcount

    def active_sessions(self, user_id: int) -> list[RefreshToken]:
        now = datetime.now(timezone.utc)
        return list(self.session.execute(
            select(RefreshToken)
            .where(
                RefreshToken.user_id == user_id,
                RefreshToken.revoked.is_(False),
                RefreshToken.expires_at > now,
            )
            .order_by(RefreshToken.id.desc())
        ).scalars())

    def sweep(self) -> int:
        """Deletes every record that is expired OR revoked; returns how many."""
        now = datetime.now(timezone.utc)
        result = self.session.execute(
            delete(RefreshToken)
            .where(or_(RefreshToken.expires_at <= now, RefreshToken.revoked.is_(True)))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount


def run_startup_sweep(app: Flask) -> int:
    """
    Best-effort housekeeping at process start.

    Any failure (no database yet, tables not migrated) is logged and
    swallowed; authentication never depends on the sweep having run.
    """
    from backend.app.extensions import db
    from backend.app.services.credential_codec import refresh_codec

    with app.app_context():
        try:
            deleted = RefreshLedger(db.session, refresh_codec()).sweep()
            db.session.commit()
        except Exception:
            db.session.rollback()
            app.logger.warning("Refresh token sweep skipped", exc_info=True)
            return 0

    if deleted:
        app.logger.info("Cleaned up %d expired/revoked refresh tokens", deleted)
    return deleted
