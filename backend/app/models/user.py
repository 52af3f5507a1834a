"""
models/user.py — User table definition.

The user record is a collaborator of the credential core: the core only calls
verify_password(), get_public_profile() and stamps last_login_at. Password
hashing lives here so that nothing else ever sees a raw hash.
"""

from __future__ import annotations

from datetime import datetime

import bcrypt
from flask import current_app
from sqlalchemy import CheckConstraint, DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.app.extensions import db


class User(db.Model):
    __tablename__ = "users"

    __table_args__ = (
        CheckConstraint(
            "LENGTH(TRIM(name)) > 0",
            name="ck_users_name_nonempty",
        ),
        CheckConstraint(
            "email LIKE '%@%'",
            name="ck_users_email_format",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    # Stored lower-cased; the schema normalises before it reaches the service.
    email: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
    )

    name: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )

    password_hash: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    last_login_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # ── Relationships ──────────────────────────────────────────────────────

    refresh_tokens: Mapped[list["RefreshToken"]] = relationship(  # noqa: F821
        "RefreshToken",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    # ── Password handling ──────────────────────────────────────────────────

    def set_password(self, raw_password: str, rounds: int = 12) -> None:
        self.password_hash = bcrypt.hashpw(
            raw_password.encode("utf-8"),
            bcrypt.gensalt(rounds=rounds),
        ).decode("utf-8")

    def verify_password(self, raw_password: str) -> bool:
        """
        Constant-time check of `raw_password` against the stored bcrypt hash.

        A corrupt stored hash is reported as a mismatch (and logged) rather
        than raised, so login still answers INVALID_CREDENTIALS.
        """
        try:
            return bcrypt.checkpw(
                raw_password.encode("utf-8"),
                self.password_hash.encode("utf-8"),
            )
        except ValueError:
            current_app.logger.error("Unreadable password hash for user %s", self.id)
            return False

    def get_public_profile(self) -> dict:
        """Serialises the fields safe to hand to any client."""
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_login_at": self.last_login_at.isoformat() if self.last_login_at else None,
        }

    def __repr__(self) -> str:  # pragma: no cover
        return f"<User id={self.id} email={self.email!r}>"
