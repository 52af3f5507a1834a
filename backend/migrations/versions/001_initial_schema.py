"""Initial schema — users and refresh_tokens.

Revision: 001_initial_schema
Created:  2026-10-18

Append-only: never edit this file once applied to any database; add a new
revision instead.

ON DELETE policies:
  refresh_tokens.user_id → CASCADE (token owned by user)
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

# ── Alembic revision identifiers ──────────────────────────────────────────
revision: str = "001_initial_schema"
down_revision: str | None = None      # first migration, no parent
branch_labels: tuple | None = None
depends_on: tuple | None = None


def upgrade() -> None:

    # ── users ──────────────────────────────────────────────────────────────
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=50), nullable=False),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("LENGTH(TRIM(name)) > 0", name="ck_users_name_nonempty"),
        sa.CheckConstraint("email LIKE '%@%'", name="ck_users_email_format"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )

    # ── refresh_tokens ─────────────────────────────────────────────────────
    # token_hash holds a keyed HMAC of the raw token, never the token.
    op.create_table(
        "refresh_tokens",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("token_hash", sa.String(length=255), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "revoked",
            sa.Boolean(),
            server_default=sa.text("false"),
            nullable=False,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "user_agent",
            sa.String(length=512),
            server_default="Unknown",
            nullable=False,
        ),
        sa.Column(
            "ip_address",
            sa.String(length=64),
            server_default="Unknown",
            nullable=False,
        ),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("token_hash"),
    )
    op.create_index("ix_refresh_tokens_user_id", "refresh_tokens", ["user_id"])
    op.create_index(
        "ix_refresh_tokens_user_state",
        "refresh_tokens",
        ["user_id", "revoked", "expires_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_refresh_tokens_user_state", table_name="refresh_tokens")
    op.drop_index("ix_refresh_tokens_user_id", table_name="refresh_tokens")
    op.drop_table("refresh_tokens")
    op.drop_table("users")
