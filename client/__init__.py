"""Async client for the SpendWise API with coordinated credential refresh."""

from client.auth_api import AuthApiError, AuthClient
from client.session import (
    RefreshState,
    SessionCoordinator,
    SessionExpiredError,
    TokenStore,
)

__all__ = [
    "AuthApiError",
    "AuthClient",
    "RefreshState",
    "SessionCoordinator",
    "SessionExpiredError",
    "TokenStore",
]
