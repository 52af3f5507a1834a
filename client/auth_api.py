"""
client/auth_api.py — Typed calls to the /auth endpoints.

Every call goes through a SessionCoordinator, so tokens returned by
register/login/refresh are captured automatically and protected calls are
retried across a credential rotation.
"""

from __future__ import annotations

import logging

import httpx

from client.session import SessionCoordinator

logger = logging.getLogger(__name__)


class AuthApiError(Exception):
    """The API answered with an error envelope."""

    def __init__(self, status: int, code: str, message: str) -> None:
        super().__init__(f"{code}: {message}")
        self.status = status
        self.code = code
        self.message = message

    @classmethod
    def from_response(cls, response: httpx.Response) -> "AuthApiError":
        try:
            error = response.json().get("error") or {}
        except ValueError:
            error = {}
        return cls(
            response.status_code,
            error.get("code", "HTTP_ERROR"),
            error.get("message", response.reason_phrase),
        )


def _data(response: httpx.Response) -> dict:
    if not response.is_success:
        raise AuthApiError.from_response(response)
    return response.json()["data"]


class AuthClient:

    def __init__(self, coordinator: SessionCoordinator) -> None:
        self.coordinator = coordinator

    async def register(self, email: str, password: str, name: str) -> dict:
        response = await self.coordinator.post(
            "/auth/register",
            json={"email": email, "password": password, "name": name},
        )
        return _data(response)

    async def login(self, email: str, password: str) -> dict:
        response = await self.coordinator.post(
            "/auth/login",
            json={"email": email, "password": password},
        )
        return _data(response)

    async def me(self) -> dict:
        return _data(await self.coordinator.get("/auth/me"))["user"]

    async def refresh(self) -> str:
        return await self.coordinator.refresh()

    async def logout(self) -> None:
        """
        Logs out server-side and always clears the local credentials, even
        if the server call fails.
        """
        headers = {}
        refresh_token = self.coordinator.store.refresh_token
        if refresh_token:
            headers["X-Refresh-Token"] = refresh_token
        try:
            response = await self.coordinator.post("/auth/logout", headers=headers)
            if not response.is_success:
                logger.info("Logout returned %s", response.status_code)
        finally:
            self.coordinator.store.clear()
            self.coordinator.client.cookies.clear()
