"""
schemas/auth_schema.py — Marshmallow schemas for authentication endpoints.

Validation responsibility:
  - This file: field types, lengths, formats.
  - services/auth_service.py: EMAIL_EXISTS (requires a DB lookup — not a
    schema concern) and credential correctness.

IMPORTANT: All schemas inherit from marshmallow.Schema directly.
           Do NOT use ma.Schema — it requires an active Flask app context
           and breaks unit tests. See extensions.py for the full explanation.
"""

from __future__ import annotations

from marshmallow import EXCLUDE, Schema, ValidationError, fields, post_load, validate, validates


class _EmailNormalisingSchema(Schema):
    """Lower-cases and trims `email` after load so lookups are case-insensitive."""

    class Meta:
        unknown = EXCLUDE

    @post_load
    def normalise_email(self, data: dict, **kwargs) -> dict:
        if "email" in data:
            data["email"] = data["email"].strip().lower()
        return data


class RegisterSchema(_EmailNormalisingSchema):
    """
    POST /auth/register

    Field rules:
      email    : valid email format, at most 255 chars
      password : min 6 chars, at least one letter and one digit
      name     : 1–50 chars after trimming
    """

    email = fields.Email(
        required=True,
        validate=validate.Length(max=255),
    )

    password = fields.Str(required=True, load_only=True)

    name = fields.Str(
        required=True,
        validate=validate.Length(
            min=1,
            max=50,
            error="Name must be between 1 and 50 characters.",
        ),
    )

    @validates("password")
    def validate_password_strength(self, value: str, **kwargs) -> None:
        if len(value) < 6:
            raise ValidationError("Password must be at least 6 characters long.")
        if not any(c.isalpha() for c in value):
            raise ValidationError("Password must contain at least one letter.")
        if not any(c.isdigit() for c in value):
            raise ValidationError("Password must contain at least one digit.")

    @validates("name")
    def validate_name_not_blank(self, value: str, **kwargs) -> None:
        if not value.strip():
            raise ValidationError("Name must not be blank.")

    @post_load
    def strip_name(self, data: dict, **kwargs) -> dict:
        data["name"] = data["name"].strip()
        return data


class LoginSchema(_EmailNormalisingSchema):
    """
    POST /auth/login

    Credential correctness is checked in auth_service.py
    (INVALID_CREDENTIALS, 401).
    """

    email = fields.Email(required=True)
    password = fields.Str(required=True, load_only=True)


class RefreshTokenSchema(Schema):
    """
    POST /auth/refresh

    The body field is optional: browsers send the `refresh_token` cookie
    instead. Presence is checked by the route (REFRESH_TOKEN_REQUIRED),
    validity by auth_service.py.
    """

    class Meta:
        unknown = EXCLUDE

    refresh_token = fields.Str(load_default=None, allow_none=True)
