"""
models/refresh_token.py — RefreshToken table definition.

One row per issued refresh credential. No business logic beyond expiry
arithmetic; all reads and writes go through services/refresh_ledger.py.

FK policy: user_id ON DELETE CASCADE — token is owned by the user;
both are deleted together.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.app.extensions import db


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes even for timezone=True columns."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class RefreshToken(db.Model):
    __tablename__ = "refresh_tokens"

    __table_args__ = (
        # Serves find_active() and sweep().
        Index("ix_refresh_tokens_user_state", "user_id", "revoked", "expires_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # HMAC-SHA256 (keyed with the refresh secret) of the raw token, never the
    # token itself. See CredentialCodec.hash_token().
    token_hash: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
    )

    # Fixed at creation. Rotation issues a new row; it never extends this one.
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    # Only ever flipped false -> true.
    revoked: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default="false",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # Device metadata for the session list.
    user_agent: Mapped[str] = mapped_column(
        String(512),
        nullable=False,
        default="Unknown",
        server_default="Unknown",
    )

    ip_address: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default="Unknown",
        server_default="Unknown",
    )

    # ── Relationships ──────────────────────────────────────────────────────

    user: Mapped["User"] = relationship(  # noqa: F821
        "User",
        back_populates="refresh_tokens",
    )

    def is_expired(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return as_utc(self.expires_at) <= now

    def to_session_dict(self) -> dict:
        return {
            "id": self.id,
            "user_agent": self.user_agent,
            "ip_address": self.ip_address,
            "created_at": as_utc(self.created_at).isoformat() if self.created_at else None,
            "expires_at": as_utc(self.expires_at).isoformat(),
        }

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<RefreshToken id={self.id} "
            f"user_id={self.user_id} "
            f"revoked={self.revoked}>"
        )
