"""
Tests for SessionCoordinator and AuthClient against an in-process fake API.

The fake is an async httpx.MockTransport handler; the refresh endpoint
sleeps briefly so concurrent callers pile up behind the in-flight rotation.
"""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from client import (
    AuthApiError,
    AuthClient,
    RefreshState,
    SessionCoordinator,
    SessionExpiredError,
    TokenStore,
)


def _error(status: int, code: str) -> httpx.Response:
    return httpx.Response(status, json={"error": {"code": code, "message": code.lower()}})


def _ok(data: dict, status: int = 200) -> httpx.Response:
    return httpx.Response(status, json={"data": data, "warnings": []})


class FakeApi:

    def __init__(self, refresh_status: int = 200) -> None:
        self.valid_token = "new-token"
        self.refresh_status = refresh_status
        self.refresh_error: Exception | None = None
        self.logout_error: Exception | None = None
        self.always_401 = False
        self.refresh_calls = 0
        self.refresh_bodies: list[dict] = []
        self.seen: list[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.seen.append(request)
        path = request.url.path

        if path == "/auth/refresh":
            self.refresh_calls += 1
            self.refresh_bodies.append(json.loads(request.content))
            await asyncio.sleep(0.01)
            if self.refresh_error is not None:
                raise self.refresh_error
            if self.refresh_status != 200:
                return _error(self.refresh_status, "INVALID_REFRESH_TOKEN")
            return _ok({"access_token": "new-token", "refresh_token": "refresh-2"})

        if path == "/auth/login":
            body = json.loads(request.content)
            if body["password"] != "secret1":
                return _error(401, "INVALID_CREDENTIALS")
            self.valid_token = "login-access"
            return _ok({
                "user": {"id": 1, "email": body["email"], "name": "Ann"},
                "access_token": "login-access",
                "refresh_token": "login-refresh",
            })

        if path == "/auth/logout" and self.logout_error is not None:
            raise self.logout_error

        if path.startswith("/slow"):
            await asyncio.sleep(0.05)

        auth = request.headers.get("Authorization")
        if self.always_401 or auth != f"Bearer {self.valid_token}":
            return _error(401, "TOKEN_EXPIRED")

        if path == "/auth/me":
            return _ok({"user": {"id": 1, "email": "ann@test.com", "name": "Ann"}})
        if path == "/auth/logout":
            return _ok({"message": "Logged out successfully.", "revoked": 1})
        return _ok({"path": path, "token": auth})

    def calls_to(self, path: str) -> list[httpx.Request]:
        return [r for r in self.seen if r.url.path == path]


def _coordinator(api: FakeApi, access: str | None = "stale-token",
                 refresh: str | None = "refresh-1") -> SessionCoordinator:
    store = TokenStore()
    if access is not None:
        store.replace(access, refresh)
    return SessionCoordinator(
        "https://api.test",
        transport=httpx.MockTransport(api),
        store=store,
    )


# ── TokenStore ─────────────────────────────────────────────────────────────

class TestTokenStore:

    def test_replace_keeps_refresh_token_when_none_given(self):
        store = TokenStore()
        store.replace("a1", "r1")
        store.replace("a2")
        assert store.access_token == "a2"
        assert store.refresh_token == "r1"

    def test_clear_drops_both(self):
        store = TokenStore()
        store.replace("a1", "r1")
        store.clear()
        assert store.access_token is None
        assert store.refresh_token is None


# ── Coordinated refresh ────────────────────────────────────────────────────

class TestCoordinatedRefresh:

    def test_valid_token_needs_no_refresh(self):
        api = FakeApi()

        async def scenario():
            async with _coordinator(api, access="new-token") as coordinator:
                return await coordinator.get("/items")

        response = asyncio.run(scenario())
        assert response.status_code == 200
        assert api.refresh_calls == 0

    def test_concurrent_401s_share_one_refresh(self):
        api = FakeApi()

        async def scenario():
            async with _coordinator(api) as coordinator:
                responses = await asyncio.gather(
                    *(coordinator.get(f"/items/{i}") for i in range(5))
                )
                return coordinator, responses

        coordinator, responses = asyncio.run(scenario())

        assert api.refresh_calls == 1
        assert coordinator.refresh_count == 1
        assert [r.status_code for r in responses] == [200] * 5
        assert {r.json()["data"]["token"] for r in responses} == {"Bearer new-token"}
        assert coordinator.state is RefreshState.IDLE
        assert coordinator.store.access_token == "new-token"
        assert coordinator.store.refresh_token == "refresh-2"

    def test_refresh_presents_the_held_refresh_token(self):
        api = FakeApi()

        async def scenario():
            async with _coordinator(api) as coordinator:
                await coordinator.get("/items")

        asyncio.run(scenario())
        assert api.refresh_bodies == [{"refresh_token": "refresh-1"}]

    def test_retry_is_marked_and_carries_the_new_token(self):
        api = FakeApi()

        async def scenario():
            async with _coordinator(api) as coordinator:
                await coordinator.get("/items")

        asyncio.run(scenario())
        first, retry = api.calls_to("/items")
        assert first.headers["Authorization"] == "Bearer stale-token"
        assert retry.headers["Authorization"] == "Bearer new-token"
        assert retry.extensions.get("auth_retried") is True

    def test_second_401_is_returned_without_looping(self):
        api = FakeApi()
        api.always_401 = True

        async def scenario():
            async with _coordinator(api) as coordinator:
                return await coordinator.get("/items")

        response = asyncio.run(scenario())
        assert response.status_code == 401
        assert api.refresh_calls == 1
        assert len(api.calls_to("/items")) == 2

    def test_request_already_marked_as_retried_is_not_refreshed(self):
        api = FakeApi()

        async def scenario():
            async with _coordinator(api) as coordinator:
                return await coordinator.get("/items", extensions={"auth_retried": True})

        response = asyncio.run(scenario())
        assert response.status_code == 401
        assert api.refresh_calls == 0
        assert len(api.calls_to("/items")) == 1

    def test_rotation_that_finished_meanwhile_is_reused(self):
        api = FakeApi()

        async def scenario():
            async with _coordinator(api, access="new-token") as coordinator:
                return await coordinator._token_after_401("stale-token")

        assert asyncio.run(scenario()) == "new-token"
        assert api.refresh_calls == 0


# ── Failed refresh ─────────────────────────────────────────────────────────

class TestFailedRefresh:

    def test_failed_refresh_rejects_every_caller_once(self):
        api = FakeApi(refresh_status=401)
        terminated = []

        async def scenario():
            async with _coordinator(api) as coordinator:
                coordinator.on_session_terminated(terminated.append)
                results = await asyncio.gather(
                    *(coordinator.get(f"/items/{i}") for i in range(5)),
                    return_exceptions=True,
                )
                return coordinator, results

        coordinator, results = asyncio.run(scenario())

        assert all(isinstance(r, SessionExpiredError) for r in results)
        assert api.refresh_calls == 1
        assert len(terminated) == 1
        assert terminated[0].response.status_code == 401
        assert coordinator.store.access_token is None
        assert coordinator.store.refresh_token is None
        assert coordinator.state is RefreshState.IDLE

    def test_network_error_during_refresh_ends_the_session(self):
        api = FakeApi()
        api.refresh_error = httpx.ConnectError("connection refused")

        async def scenario():
            async with _coordinator(api) as coordinator:
                with pytest.raises(SessionExpiredError):
                    await coordinator.get("/items")
                return coordinator

        coordinator = asyncio.run(scenario())
        assert coordinator.store.access_token is None

    def test_async_callbacks_are_awaited(self):
        api = FakeApi(refresh_status=401)
        events = []

        async def on_terminated(error):
            await asyncio.sleep(0)
            events.append(type(error).__name__)

        async def scenario():
            async with _coordinator(api) as coordinator:
                coordinator.on_session_terminated(on_terminated)
                with pytest.raises(SessionExpiredError):
                    await coordinator.get("/items")

        asyncio.run(scenario())
        assert events == ["SessionExpiredError"]

    def test_late_401_after_failed_refresh_does_not_refresh_again(self):
        api = FakeApi(refresh_status=401)
        terminated = []

        async def scenario():
            async with _coordinator(api) as coordinator:
                coordinator.on_session_terminated(terminated.append)
                return await asyncio.gather(
                    coordinator.get("/fast"),
                    coordinator.get("/slow"),
                    return_exceptions=True,
                )

        results = asyncio.run(scenario())

        assert [type(r) for r in results] == [SessionExpiredError, SessionExpiredError]
        assert api.refresh_calls == 1
        assert len(terminated) == 1
        assert len(api.calls_to("/slow")) == 1

    def test_failed_refresh_clears_the_cookie_jar(self):
        api = FakeApi(refresh_status=401)

        async def scenario():
            async with _coordinator(api) as coordinator:
                coordinator.client.cookies.set("token", "stale-token")
                coordinator.client.cookies.set("refresh_token", "refresh-1")
                with pytest.raises(SessionExpiredError):
                    await coordinator.get("/items")
                return len(coordinator.client.cookies)

        assert asyncio.run(scenario()) == 0

    def test_requests_after_termination_fail_without_refreshing(self):
        api = FakeApi(refresh_status=401)

        async def scenario():
            async with _coordinator(api) as coordinator:
                with pytest.raises(SessionExpiredError):
                    await coordinator.get("/items")
                with pytest.raises(SessionExpiredError):
                    await coordinator.get("/items")

        asyncio.run(scenario())
        assert api.refresh_calls == 1

    def test_new_login_rearms_refresh(self):
        api = FakeApi(refresh_status=401)

        async def scenario():
            async with _coordinator(api) as coordinator:
                with pytest.raises(SessionExpiredError):
                    await coordinator.get("/items")
                await AuthClient(coordinator).login("ann@test.com", "secret1")
                api.valid_token = "rotated-elsewhere"
                with pytest.raises(SessionExpiredError):
                    await coordinator.get("/items")

        asyncio.run(scenario())
        assert api.refresh_calls == 2

    def test_broken_callback_does_not_mask_the_error(self):
        api = FakeApi(refresh_status=401)

        def broken(error):
            raise RuntimeError("listener bug")

        async def scenario():
            async with _coordinator(api) as coordinator:
                coordinator.on_session_terminated(broken)
                with pytest.raises(SessionExpiredError):
                    await coordinator.get("/items")

        asyncio.run(scenario())

    def test_session_can_recover_after_a_new_login(self):
        api = FakeApi(refresh_status=401)

        async def scenario():
            async with _coordinator(api) as coordinator:
                with pytest.raises(SessionExpiredError):
                    await coordinator.get("/items")
                await AuthClient(coordinator).login("ann@test.com", "secret1")
                return await coordinator.get("/items")

        response = asyncio.run(scenario())
        assert response.status_code == 200


# ── AuthClient ─────────────────────────────────────────────────────────────

class TestAuthClient:

    def test_login_stores_the_returned_credentials(self):
        api = FakeApi()

        async def scenario():
            async with _coordinator(api, access=None) as coordinator:
                auth = AuthClient(coordinator)
                data = await auth.login("ann@test.com", "secret1")
                me = await auth.me()
                return coordinator, data, me

        coordinator, data, me = asyncio.run(scenario())
        assert data["user"]["email"] == "ann@test.com"
        assert coordinator.store.access_token == "login-access"
        assert coordinator.store.refresh_token == "login-refresh"
        assert me["email"] == "ann@test.com"
        assert api.calls_to("/auth/me")[0].headers["Authorization"] == "Bearer login-access"

    def test_wrong_password_raises_without_refreshing(self):
        api = FakeApi()

        async def scenario():
            async with _coordinator(api, access=None) as coordinator:
                with pytest.raises(AuthApiError) as exc_info:
                    await AuthClient(coordinator).login("ann@test.com", "wrong")
                return exc_info.value

        error = asyncio.run(scenario())
        assert error.status == 401
        assert error.code == "INVALID_CREDENTIALS"
        assert api.refresh_calls == 0

    def test_logout_sends_refresh_proof_and_clears_state(self):
        api = FakeApi()

        async def scenario():
            async with _coordinator(api, access=None) as coordinator:
                auth = AuthClient(coordinator)
                await auth.login("ann@test.com", "secret1")
                await auth.logout()
                return coordinator

        coordinator = asyncio.run(scenario())
        logout = api.calls_to("/auth/logout")[0]
        assert logout.headers["X-Refresh-Token"] == "login-refresh"
        assert logout.headers["Authorization"] == "Bearer login-access"
        assert coordinator.store.access_token is None

    def test_logout_clears_state_even_when_the_server_is_down(self):
        api = FakeApi()
        api.logout_error = httpx.ConnectError("connection refused")

        async def scenario():
            async with _coordinator(api, access="new-token") as coordinator:
                with pytest.raises(httpx.ConnectError):
                    await AuthClient(coordinator).logout()
                return coordinator

        coordinator = asyncio.run(scenario())
        assert coordinator.store.access_token is None
        assert coordinator.store.refresh_token is None

    def test_explicit_refresh_returns_the_new_token(self):
        api = FakeApi()

        async def scenario():
            async with _coordinator(api) as coordinator:
                return await AuthClient(coordinator).refresh()

        assert asyncio.run(scenario()) == "new-token"
