"""
tests/integration/conftest.py — Fixtures and helpers for all integration tests.

Design:
  - Tests run against the database in TestingConfig: in-memory SQLite by
    default, or whatever TEST_DATABASE_URL points at (e.g. PostgreSQL).
  - The app is created once per session using create_app("testing").
  - All tables are created once via db.create_all() at session start.
  - Between tests, all rows are deleted in FK-safe order so tests are isolated.

Helper functions (not fixtures) are provided for common operations:
  - register(client, ...)    → response data dict with user + tokens
  - login(client, ...)       → response data dict with user + tokens
  - auth_headers(token)      → {"Authorization": "Bearer <token>"}
  - set_cookies(resp)        → list of Set-Cookie header values

These are plain functions (not pytest fixtures) so they can be called with
arbitrary arguments in any test without fixture parameterization overhead.
"""

from __future__ import annotations

import pytest
from sqlalchemy import text

from backend.app import create_app
from backend.app.extensions import db as _db


# ═══════════════════════════════════════════════════════════════════════════
# Session-scoped app fixture
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture(scope="session")
def app():
    """
    Creates the Flask application in 'testing' mode once for the entire test
    session, with all tables created up front and dropped at teardown.
    """
    flask_app = create_app("testing")

    with flask_app.app_context():
        _db.create_all()

    yield flask_app

    with flask_app.app_context():
        _db.drop_all()


# ═══════════════════════════════════════════════════════════════════════════
# Function-scoped test isolation
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture(autouse=True)
def clean_tables(app):
    """
    Deletes all rows between tests in FK-safe order.

    autouse=True means this runs around EVERY test in the integration suite
    without needing to be declared in each test function.
    """
    yield  # run the test

    with app.app_context():
        _db.session.rollback()  # discard any uncommitted state from a failed test
        _db.session.execute(text("DELETE FROM refresh_tokens"))
        _db.session.execute(text("DELETE FROM users"))
        _db.session.commit()
        _db.session.remove()


# ═══════════════════════════════════════════════════════════════════════════
# Client fixture
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def client(app):
    """Flask test client. Each test gets a fresh client (function-scoped)."""
    return app.test_client()


# ═══════════════════════════════════════════════════════════════════════════
# Shared helper functions (not fixtures)
# ═══════════════════════════════════════════════════════════════════════════

def register(
    client,
    email: str = "ann@test.com",
    password: str = "secret1",
    name: str = "Ann",
) -> dict:
    """
    Registers a new user and returns the full response data dict.
    Returns: {"user": {...}, "access_token": "...", "refresh_token": "..."}
    """
    resp = client.post(
        "/api/v1/auth/register",
        json={"email": email, "password": password, "name": name},
    )
    assert resp.status_code == 201, f"register failed: {resp.get_json()}"
    return resp.get_json()["data"]


def login(client, email: str = "ann@test.com", password: str = "secret1") -> dict:
    """
    Logs in a user and returns the response data dict.
    Returns: {"user": {...}, "access_token": "...", "refresh_token": "..."}
    """
    resp = client.post(
        "/api/v1/auth/login",
        json={"email": email, "password": password},
    )
    assert resp.status_code == 200, f"login failed: {resp.get_json()}"
    return resp.get_json()["data"]


def auth_headers(token: str) -> dict:
    """Returns the Authorization header dict for use in test requests."""
    return {"Authorization": f"Bearer {token}"}


def set_cookies(resp) -> list[str]:
    """All Set-Cookie header values on a response."""
    return resp.headers.getlist("Set-Cookie")


def refresh_rows(app) -> list:
    """All refresh_tokens rows, oldest first, as plain tuples."""
    with app.app_context():
        return _db.session.execute(text(
            "SELECT id, user_id, token_hash, revoked, user_agent, ip_address "
            "FROM refresh_tokens ORDER BY id"
        )).all()
