"""
client/session.py — Credential-aware HTTP client with single-flight refresh.

SessionCoordinator wraps an httpx.AsyncClient and:
  1. Attaches the held access token to every outgoing request
  2. On a 401 for a request that has not been retried yet, rotates the
     credential pair through POST /auth/refresh and replays the request
  3. Collapses concurrent refreshes: while one rotation is in flight, other
     failing requests park a future in the pending queue and are replayed,
     in arrival order, with whatever token the rotation produced
  4. On a failed rotation, rejects every waiter, clears the held tokens and
     the cookie jar, and fires the session-terminated callbacks
  5. After a failed rotation, later 401s fail with the same
     SessionExpiredError without another refresh, until a login or register
     response delivers fresh credentials

State is per instance (Idle -> Refreshing -> Idle). Everything runs on one
asyncio event loop; no locks are needed because the state check and the
transition to Refreshing happen without an intervening await.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

import httpx

logger = logging.getLogger(__name__)

REFRESH_PATH = "/auth/refresh"
RETRIED = "auth_retried"

# A 401 from these means bad credentials, not an expired access token.
CREDENTIAL_EXCHANGE_PATHS = ("/auth/login", "/auth/register", REFRESH_PATH)


class SessionExpiredError(Exception):
    """The refresh credential was rejected; the user must log in again."""

    def __init__(self, message: str, response: httpx.Response | None = None) -> None:
        super().__init__(message)
        self.response = response


class RefreshState(enum.Enum):
    IDLE = "idle"
    REFRESHING = "refreshing"


@dataclass(frozen=True)
class Credentials:
    access_token: str
    refresh_token: str | None = None


class TokenStore:
    """
    Single slot holding the current credentials.

    The slot is replaced wholesale, never mutated field by field, so a reader
    always sees a matching access/refresh pair.
    """

    def __init__(self) -> None:
        self._current: Credentials | None = None

    @property
    def access_token(self) -> str | None:
        current = self._current
        return current.access_token if current else None

    @property
    def refresh_token(self) -> str | None:
        current = self._current
        return current.refresh_token if current else None

    def replace(self, access_token: str, refresh_token: str | None = None) -> None:
        previous = self._current
        if refresh_token is None and previous is not None:
            refresh_token = previous.refresh_token
        self._current = Credentials(access_token, refresh_token)

    def clear(self) -> None:
        self._current = None


SessionTerminatedCallback = Callable[[SessionExpiredError], "Awaitable[None] | None"]


class SessionCoordinator:

    def __init__(
            self,
            base_url: str,
            *,
            transport: httpx.AsyncBaseTransport | None = None,
            timeout: float = 30.0,
            store: TokenStore | None = None,
    ) -> None:
        self.client = httpx.AsyncClient(
            base_url=base_url,
            transport=transport,
            timeout=timeout,
        )
        self.store = store or TokenStore()
        self.state = RefreshState.IDLE
        self._pending: list[asyncio.Future] = []
        self._on_terminated: list[SessionTerminatedCallback] = []
        self.refresh_count = 0
        # Set by a failed rotation; cleared when fresh credentials arrive.
        self._terminated: SessionExpiredError | None = None

    # ── Lifecycle ──────────────────────────────────────────────────────────

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> "SessionCoordinator":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def on_session_terminated(self, callback: SessionTerminatedCallback) -> None:
        """Registers a callback fired once per failed rotation."""
        self._on_terminated.append(callback)

    # ── Requests ───────────────────────────────────────────────────────────

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """
        Sends a request with the held access token attached.

        A 401 on a protected call triggers (or joins) a refresh and the
        request is replayed once, marked with the RETRIED extension.
        Raises SessionExpiredError if the refresh fails; any other response,
        including a second 401, is returned to the caller.
        """
        request = self.client.build_request(method, url, **kwargs)
        sent_token = self._attach(request, self.store.access_token)

        while True:
            response = await self.client.send(request)
            if (
                    response.status_code != 401
                    or request.extensions.get(RETRIED)
                    or request.url.path.endswith(CREDENTIAL_EXCHANGE_PATHS)
            ):
                self._capture_tokens(response)
                return response

            await response.aclose()
            token = await self._token_after_401(sent_token)

            request = self.client.build_request(method, url, **kwargs)
            request.extensions[RETRIED] = True
            sent_token = self._attach(request, token)

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("PUT", url, **kwargs)

    async def patch(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("PATCH", url, **kwargs)

    async def delete(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)

    # ── Refresh coordination ───────────────────────────────────────────────

    async def _token_after_401(self, sent_token: str | None) -> str:
        if self.state is RefreshState.IDLE:
            current = self.store.access_token
            if current is not None and current != sent_token:
                # A rotation (or a new login) finished while this request
                # was on the wire.
                return current
            if self._terminated is not None:
                # The session already ended; do not rotate again.
                raise self._terminated
        return await self.refresh()

    async def refresh(self) -> str:
        """
        Rotates the credential pair. Joins the in-flight rotation if there is
        one. Returns the new access token or raises SessionExpiredError.
        """
        if self.state is RefreshState.REFRESHING:
            future = asyncio.get_running_loop().create_future()
            self._pending.append(future)
            logger.debug("Refresh in flight; queued request (%d waiting)", len(self._pending))
            return await future

        self.state = RefreshState.REFRESHING
        self.refresh_count += 1
        try:
            token = await self._rotate()
        except SessionExpiredError as exc:
            self.state = RefreshState.IDLE
            self._terminated = exc
            self._settle_pending(error=exc)
            self.store.clear()
            self.client.cookies.clear()
            await self._notify_terminated(exc)
            raise
        except BaseException:
            # Cancelled mid-rotation: release the waiters, keep the session.
            self.state = RefreshState.IDLE
            self._settle_pending(error=SessionExpiredError("Token refresh was interrupted."))
            raise

        self.state = RefreshState.IDLE
        self._settle_pending(token=token)
        return token

    async def _rotate(self) -> str:
        body = {}
        if self.store.refresh_token:
            body["refresh_token"] = self.store.refresh_token

        logger.debug("Attempting token refresh")
        try:
            response = await self.client.post(REFRESH_PATH, json=body)
        except httpx.HTTPError as exc:
            logger.warning("Token refresh failed: %s", exc)
            raise SessionExpiredError(f"Token refresh failed: {exc}") from exc

        if response.status_code != 200:
            logger.info("Token refresh rejected with status %s", response.status_code)
            raise SessionExpiredError(
                f"Token refresh rejected ({response.status_code}).", response=response,
            )

        data = _response_data(response)
        access_token = data.get("access_token") if data else None
        if not access_token:
            raise SessionExpiredError("Refresh response carried no access token.", response=response)

        self._store_credentials(access_token, data.get("refresh_token"))
        logger.debug("Token refresh successful")
        return access_token

    def _settle_pending(
            self,
            token: str | None = None,
            error: SessionExpiredError | None = None,
    ) -> None:
        pending, self._pending = self._pending, []
        for future in pending:
            if future.done():
                continue
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(token)

    async def _notify_terminated(self, error: SessionExpiredError) -> None:
        for callback in list(self._on_terminated):
            try:
                result = callback(error)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Session-terminated callback failed")

    # ── Helpers ────────────────────────────────────────────────────────────

    @staticmethod
    def _attach(request: httpx.Request, token: str | None) -> str | None:
        if token:
            request.headers["Authorization"] = f"Bearer {token}"
        return token

    def _capture_tokens(self, response: httpx.Response) -> None:
        """Stores credentials from login/register/refresh response bodies."""
        if not response.is_success:
            return
        data = _response_data(response)
        if data and data.get("access_token"):
            self._store_credentials(data["access_token"], data.get("refresh_token"))

    def _store_credentials(self, access_token: str, refresh_token: str | None) -> None:
        self.store.replace(access_token, refresh_token)
        self._terminated = None


def _response_data(response: httpx.Response) -> dict | None:
    """Returns the `data` object of a JSON envelope, or None."""
    if "application/json" not in response.headers.get("content-type", ""):
        return None
    try:
        body = response.json()
    except ValueError:
        return None
    data = body.get("data") if isinstance(body, dict) else None
    return data if isinstance(data, dict) else None
