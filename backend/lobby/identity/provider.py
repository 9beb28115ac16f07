"""Local identity establishment.

Room operations need the player's identity before they can write anything.
Establishing it is a suspension point of its own (an anonymous sign-in
round trip), so callers wait on it with a bounded timeout.
"""

from __future__ import annotations

import asyncio
import contextlib
from http import HTTPStatus
from typing import Any

import httpx
import structlog

from lobby.rooms.exceptions import AuthenticationTimeoutError

logger = structlog.get_logger()

SIGN_UP_URL = "https://identitytoolkit.googleapis.com/v1/accounts:signUp"
SECURE_TOKEN_URL = "https://securetoken.googleapis.com/v1/token"

DEFAULT_TOKEN_LIFETIME_SECONDS = 3600.0
REFRESH_MARGIN_SECONDS = 300.0
REFRESH_RETRY_SECONDS = 30.0


class IdentityProvider:
    """Base class for identity sources.

    Subclasses call ``_establish`` once the identity is known; ``wait``
    resolves immediately afterwards.
    """

    def __init__(self) -> None:
        self._identity: str | None = None
        self._established = asyncio.Event()

    @property
    def identity(self) -> str | None:
        return self._identity

    @property
    def id_token(self) -> str | None:
        """Bearer token for the shared store, when the provider issues one."""
        return None

    async def start(self) -> None:
        """Begin establishing the identity. Must not block on the network."""
        return

    async def wait(self, timeout: float) -> str:
        """Return the identity, waiting at most ``timeout`` seconds for it."""
        if self._identity is not None:
            return self._identity
        try:
            await asyncio.wait_for(self._established.wait(), timeout=timeout)
        except TimeoutError as e:
            logger.warning("timed out waiting for identity", timeout=timeout)
            raise AuthenticationTimeoutError(timeout) from e
        if self._identity is None:  # pragma: no cover
            raise AuthenticationTimeoutError(timeout)
        return self._identity

    async def aclose(self) -> None:
        return

    def _establish(self, identity: str) -> None:
        self._identity = identity
        self._established.set()
        logger.info("identity established", player_id=identity)


class StaticIdentityProvider(IdentityProvider):
    """Identity known up front (offline play, tests).

    When constructed without an identity, ``assign`` establishes it later,
    which lets tests exercise the waiting path.
    """

    def __init__(self, identity: str | None = None) -> None:
        super().__init__()
        self._pending = identity

    async def start(self) -> None:
        if self._pending is not None and self._identity is None:
            self._establish(self._pending)

    def assign(self, identity: str) -> None:
        self._establish(identity)


class AnonymousAuthProvider(IdentityProvider):
    """Anonymous sign-up against the Firebase Identity Toolkit REST API.

    ``start`` launches the sign-in as a background task; its failures are
    logged and leave the identity unset, so waiters time out cleanly.

    ID tokens expire after about an hour. The same task then keeps the token
    fresh through the secure token endpoint, ``refresh_margin`` seconds
    before each expiry. The identity itself never changes.
    """

    def __init__(
        self,
        api_key: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
        sign_up_url: str = SIGN_UP_URL,
        secure_token_url: str = SECURE_TOKEN_URL,
        refresh_margin: float = REFRESH_MARGIN_SECONDS,
        refresh_retry_delay: float = REFRESH_RETRY_SECONDS,
    ) -> None:
        super().__init__()
        self._api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._sign_up_url = sign_up_url
        self._secure_token_url = secure_token_url
        self._refresh_margin = refresh_margin
        self._refresh_retry_delay = refresh_retry_delay
        self._id_token: str | None = None
        self._sign_in_task: asyncio.Task[None] | None = None

    @property
    def id_token(self) -> str | None:
        return self._id_token

    async def start(self) -> None:
        if self._identity is not None:
            return
        if self._sign_in_task is not None and not self._sign_in_task.done():
            return
        self._sign_in_task = asyncio.create_task(self._sign_in())

    async def aclose(self) -> None:
        if self._sign_in_task is not None:
            self._sign_in_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sign_in_task
            self._sign_in_task = None
        if self._owns_client:
            await self._client.aclose()

    async def _sign_in(self) -> None:
        try:
            response = await self._client.post(
                self._sign_up_url,
                params={"key": self._api_key},
                json={"returnSecureToken": True},
            )
        except httpx.RequestError:
            logger.exception("anonymous sign-in failed")
            return

        if response.status_code != HTTPStatus.OK:
            logger.error("anonymous sign-in rejected", status_code=response.status_code)
            return

        try:
            data = response.json()
        except ValueError:
            logger.error("anonymous sign-in returned a non-JSON body")
            return

        local_id = data.get("localId")
        if not local_id:
            logger.error("anonymous sign-in response missing localId")
            return
        self._id_token = data.get("idToken")
        self._establish(local_id)

        refresh_token = data.get("refreshToken")
        if refresh_token:
            await self._keep_token_fresh(refresh_token, _token_lifetime(data.get("expiresIn")))

    async def _keep_token_fresh(self, refresh_token: str, lifetime: float) -> None:
        """Swap the refresh token for a new ID token shortly before each expiry.

        Transport failures and server errors are retried. A rejected refresh
        token ends the loop and the current ID token is left to expire.
        """
        delay = max(lifetime - self._refresh_margin, 0.0)
        while True:
            await asyncio.sleep(delay)
            delay = self._refresh_retry_delay
            try:
                response = await self._client.post(
                    self._secure_token_url,
                    params={"key": self._api_key},
                    data={"grant_type": "refresh_token", "refresh_token": refresh_token},
                )
            except httpx.RequestError:
                logger.warning("id token refresh failed, retrying", retry_in=delay, exc_info=True)
                continue

            if response.is_client_error:
                logger.error("id token refresh rejected", status_code=response.status_code)
                return
            if response.status_code != HTTPStatus.OK:
                logger.warning("id token refresh failed, retrying", status_code=response.status_code, retry_in=delay)
                continue
            try:
                data = response.json()
            except ValueError:
                data = None
            if not isinstance(data, dict) or not data.get("id_token"):
                logger.warning("id token refresh returned no token, retrying", retry_in=delay)
                continue

            self._id_token = data["id_token"]
            refresh_token = data.get("refresh_token") or refresh_token
            lifetime = _token_lifetime(data.get("expires_in"))
            delay = max(lifetime - self._refresh_margin, 0.0)
            logger.debug("id token refreshed", expires_in=lifetime)


def _token_lifetime(value: Any) -> float:  # noqa: ANN401
    """Token lifetimes arrive as strings of seconds."""
    try:
        return float(value)
    except (TypeError, ValueError):
        return DEFAULT_TOKEN_LIFETIME_SECONDS
