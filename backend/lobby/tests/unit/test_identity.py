"""Tests for identity providers."""

import asyncio
import json
from urllib.parse import parse_qs

import httpx
import pytest

from lobby.identity.provider import AnonymousAuthProvider, StaticIdentityProvider
from lobby.rooms.exceptions import AuthenticationTimeoutError, RoomErrorCode


class TestStaticIdentityProvider:
    async def test_identity_available_after_start(self):
        provider = StaticIdentityProvider("player-1")
        assert provider.identity is None

        await provider.start()

        assert provider.identity == "player-1"
        assert await provider.wait(timeout=0.1) == "player-1"
        assert provider.id_token is None

    async def test_wait_times_out_without_identity(self):
        provider = StaticIdentityProvider()
        await provider.start()

        with pytest.raises(AuthenticationTimeoutError) as exc_info:
            await provider.wait(timeout=0.01)

        assert exc_info.value.code == RoomErrorCode.AUTHENTICATION_TIMEOUT
        assert exc_info.value.timeout == 0.01

    async def test_waiter_released_by_late_assignment(self):
        provider = StaticIdentityProvider()
        waiter = asyncio.create_task(provider.wait(timeout=1.0))
        await asyncio.sleep(0)

        provider.assign("late-player")

        assert await waiter == "late-player"


class TestAnonymousAuthProvider:
    @staticmethod
    def _client(handler) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    async def test_sign_up_establishes_identity_and_token(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"localId": "uid-123", "idToken": "id-token"})

        provider = AnonymousAuthProvider("api-key", client=self._client(handler))
        await provider.start()

        assert await provider.wait(timeout=1.0) == "uid-123"
        assert provider.id_token == "id-token"
        assert requests[0].method == "POST"
        assert requests[0].url.params["key"] == "api-key"
        assert json.loads(requests[0].content) == {"returnSecureToken": True}
        await provider.aclose()

    async def test_rejected_sign_up_leaves_identity_unset(self):
        provider = AnonymousAuthProvider("bad-key", client=self._client(lambda _r: httpx.Response(400, json={})))
        await provider.start()

        with pytest.raises(AuthenticationTimeoutError):
            await provider.wait(timeout=0.05)
        assert provider.identity is None
        await provider.aclose()

    async def test_response_without_local_id_leaves_identity_unset(self):
        provider = AnonymousAuthProvider("key", client=self._client(lambda _r: httpx.Response(200, json={"idToken": "t"})))
        await provider.start()

        with pytest.raises(AuthenticationTimeoutError):
            await provider.wait(timeout=0.05)
        assert provider.id_token is None
        await provider.aclose()

    async def test_transport_failure_leaves_identity_unset(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("no network", request=request)

        provider = AnonymousAuthProvider("key", client=self._client(handler))
        await provider.start()

        with pytest.raises(AuthenticationTimeoutError):
            await provider.wait(timeout=0.05)
        await provider.aclose()

    async def test_start_is_idempotent(self):
        calls = 0

        def handler(_request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(200, json={"localId": "uid", "idToken": "t"})

        provider = AnonymousAuthProvider("key", client=self._client(handler))
        await provider.start()
        await provider.start()
        await provider.wait(timeout=1.0)
        await provider.start()

        assert calls == 1
        await provider.aclose()


class TestTokenRefresh:
    SIGN_UP_BODY = {"localId": "uid-1", "idToken": "token-1", "refreshToken": "refresh-1", "expiresIn": "1"}

    @staticmethod
    def _provider(handler, **kwargs) -> AnonymousAuthProvider:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        options = {"refresh_margin": 0.99, "refresh_retry_delay": 0.01, **kwargs}
        return AnonymousAuthProvider("api-key", client=client, **options)

    async def test_token_refreshed_before_expiry(self):
        refreshes: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "securetoken.googleapis.com":
                refreshes.append(request)
                return httpx.Response(200, json={"id_token": "token-2", "refresh_token": "refresh-2", "expires_in": "3600"})
            return httpx.Response(200, json=self.SIGN_UP_BODY)

        provider = self._provider(handler)
        await provider.start()
        await provider.wait(timeout=1.0)
        await asyncio.sleep(0.1)

        assert provider.id_token == "token-2"
        assert provider.identity == "uid-1"
        assert len(refreshes) == 1
        assert refreshes[0].url.params["key"] == "api-key"
        assert parse_qs(refreshes[0].content.decode()) == {
            "grant_type": ["refresh_token"],
            "refresh_token": ["refresh-1"],
        }
        await provider.aclose()

    async def test_rejected_refresh_token_stops_refreshing(self):
        refreshes = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal refreshes
            if request.url.host == "securetoken.googleapis.com":
                refreshes += 1
                return httpx.Response(400, json={"error": {"message": "TOKEN_EXPIRED"}})
            return httpx.Response(200, json=self.SIGN_UP_BODY)

        provider = self._provider(handler)
        await provider.start()
        await provider.wait(timeout=1.0)
        await asyncio.sleep(0.1)

        assert refreshes == 1
        assert provider.id_token == "token-1"
        await provider.aclose()

    async def test_transport_failure_is_retried(self):
        attempts = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal attempts
            if request.url.host == "securetoken.googleapis.com":
                attempts += 1
                if attempts == 1:
                    raise httpx.ConnectError("offline", request=request)
                return httpx.Response(200, json={"id_token": "token-2", "expires_in": "3600"})
            return httpx.Response(200, json=self.SIGN_UP_BODY)

        provider = self._provider(handler)
        await provider.start()
        await provider.wait(timeout=1.0)
        await asyncio.sleep(0.1)

        assert attempts == 2
        assert provider.id_token == "token-2"
        await provider.aclose()

    async def test_aclose_stops_pending_refresh(self):
        refreshes = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal refreshes
            if request.url.host == "securetoken.googleapis.com":
                refreshes += 1
            return httpx.Response(200, json={**self.SIGN_UP_BODY, "expiresIn": "3600"})

        provider = self._provider(handler, refresh_margin=0.0)
        await provider.start()
        await provider.wait(timeout=1.0)

        await provider.aclose()

        assert refreshes == 0
        assert provider.id_token == "token-1"
