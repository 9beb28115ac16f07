"""Registry adapter for the Firebase Realtime Database REST API.

Reads and writes map to GET/PUT/PATCH/DELETE on ``<database>/<path>.json``.
Compare-and-mutate uses ETag conditional requests: the current value is
fetched with ``X-Firebase-ETag: true`` and written back with ``if-match``;
a 412 response carries the fresh value and ETag, and the mutate function is
rerun against them. Subscriptions use the server-sent events stream and keep
a local mirror of the subscribed value, patched by ``put``/``patch`` events.
"""

from __future__ import annotations

import asyncio
import contextlib
import copy
import functools
import json
from http import HTTPStatus
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from lobby.registry.exceptions import RegistryUnavailableError
from lobby.registry.protocol import DEFAULT_MAX_RERUNS, RegistryProtocol
from lobby.registry.types import AtomicOutcome, Snapshot, Subscription, assign_path, join_path, split_path

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from lobby.registry.types import SnapshotCallback, SubscriptionClosedCallback, TransactionResult

logger = structlog.get_logger()

ETAG_REQUEST_HEADER = "X-Firebase-ETag"
_STREAM_HEADERS = {"Accept": "text/event-stream"}
_UNSET = object()


class FirebaseRestRegistry(RegistryProtocol):
    """Shared store backed by a Firebase Realtime Database over HTTPS."""

    def __init__(
        self,
        database_url: str,
        *,
        token_provider: Callable[[], str | None] | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._base_url = database_url.rstrip("/")
        self._token_provider = token_provider
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._timeout = timeout
        self._streams: dict[int, asyncio.Task[str]] = {}
        self._next_stream_id = 0

    async def read(self, path: str) -> Any:  # noqa: ANN401
        response = await self._request("read", "GET", path)
        return _decode(response, "read", path)

    async def write(self, path: str, value: Any) -> None:  # noqa: ANN401
        if value is None:
            await self.remove(path)
            return
        await self._request("write", "PUT", path, body=value)

    async def update(self, path: str, values: Mapping[str, Any]) -> None:
        await self._request("update", "PATCH", path, body=dict(values))

    async def remove(self, path: str) -> None:
        await self._request("remove", "DELETE", path)

    async def run_atomic(
        self,
        path: str,
        mutate: Callable[[Any], TransactionResult],
        *,
        max_reruns: int = DEFAULT_MAX_RERUNS,
    ) -> AtomicOutcome:
        response = await self._request("run_atomic", "GET", path, headers={ETAG_REQUEST_HEADER: "true"})
        etag = response.headers.get("ETag", "")
        seen = _decode(response, "run_atomic", path)

        for invocation in range(1, max_reruns + 1):
            result = mutate(copy.deepcopy(seen))
            if result.aborted:
                return AtomicOutcome(committed=False, snapshot=seen, reruns=invocation)

            if result.value is None:
                method, body = "DELETE", _UNSET
            else:
                method, body = "PUT", result.value
            response = await self._request(
                "run_atomic",
                method,
                path,
                body=body,
                headers={ETAG_REQUEST_HEADER: "true", "if-match": etag},
                expected=(HTTPStatus.OK, HTTPStatus.PRECONDITION_FAILED),
            )
            if response.status_code == HTTPStatus.OK:
                committed = _decode(response, "run_atomic", path) if method == "PUT" else None
                return AtomicOutcome(committed=True, snapshot=committed, reruns=invocation)

            # 412: someone else wrote first; the body holds the value we lost to.
            etag = response.headers.get("ETag", "")
            seen = _decode(response, "run_atomic", path)
            logger.debug("transaction conflict, rerunning", path=path, invocation=invocation)

        logger.warning("transaction rerun budget exhausted", path=path, max_reruns=max_reruns)
        return AtomicOutcome(committed=False, snapshot=seen, reruns=max_reruns)

    async def subscribe(
        self,
        path: str,
        callback: SnapshotCallback,
        on_closed: SubscriptionClosedCallback | None = None,
    ) -> Subscription:
        opened: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        stream_id = self._next_stream_id
        self._next_stream_id += 1
        task = asyncio.create_task(self._stream(path, callback, opened))
        self._streams[stream_id] = task
        task.add_done_callback(lambda _t: self._streams.pop(stream_id, None))
        try:
            await opened
        except BaseException:
            task.cancel()
            raise
        subscription = Subscription(path=path, _on_cancel=task.cancel)
        task.add_done_callback(functools.partial(self._stream_finished, subscription, on_closed))
        return subscription

    async def aclose(self) -> None:
        tasks = list(self._streams.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._streams.clear()
        if self._owns_client:
            await self._client.aclose()

    # --- internals ---

    def _url(self, path: str) -> str:
        return f"{self._base_url}/{join_path(path)}.json"

    def _params(self) -> dict[str, str]:
        token = self._token_provider() if self._token_provider is not None else None
        return {"auth": token} if token else {}

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        body: Any = _UNSET,  # noqa: ANN401
        headers: dict[str, str] | None = None,
        expected: tuple[int, ...] = (HTTPStatus.OK,),
    ) -> httpx.Response:
        kwargs: dict[str, Any] = {"params": self._params(), "headers": headers or {}}
        if body is not _UNSET:
            kwargs["json"] = body
        try:
            response = await self._client.request(method, self._url(path), **kwargs)
        except httpx.RequestError as e:
            raise RegistryUnavailableError(operation, path, str(e)) from e
        if response.status_code not in expected:
            raise RegistryUnavailableError(operation, path, f"HTTP {response.status_code}")
        return response

    async def _stream(self, path: str, callback: SnapshotCallback, opened: asyncio.Future[None]) -> str:
        """Consume the event stream for ``path`` until cancelled or closed by the server.

        Returns the reason the stream ended once it had been opened.
        """
        mirror: Any = None
        event_name = ""
        try:
            async with self._client.stream(
                "GET",
                self._url(path),
                params=self._params(),
                headers=_STREAM_HEADERS,
                timeout=httpx.Timeout(self._timeout, read=None),
            ) as response:
                if response.status_code != HTTPStatus.OK:
                    raise RegistryUnavailableError("subscribe", path, f"HTTP {response.status_code}")
                opened.set_result(None)
                async for line in response.aiter_lines():
                    if line.startswith("event:"):
                        event_name = line.removeprefix("event:").strip()
                    elif line.startswith("data:"):
                        data = line.removeprefix("data:").strip()
                        if event_name in {"put", "patch"}:
                            try:
                                mirror = self._apply_event(event_name, data, mirror)
                            except (ValueError, AttributeError):
                                logger.warning("malformed stream event dropped", path=path, sse_event=event_name)
                                continue
                            self._deliver(callback, Snapshot(path=path, value=copy.deepcopy(mirror)))
                        elif event_name in {"cancel", "auth_revoked"}:
                            logger.warning("subscription closed by server", path=path, reason=event_name)
                            return event_name
            return "stream ended"
        except httpx.RequestError as e:
            return self._fail_stream(opened, RegistryUnavailableError("subscribe", path, str(e)))
        except RegistryUnavailableError as e:
            return self._fail_stream(opened, e)
        finally:
            if not opened.done():
                opened.cancel()

    @staticmethod
    def _apply_event(event_name: str, data: str, mirror: Any) -> Any:  # noqa: ANN401
        payload = json.loads(data)
        segments = split_path(payload.get("path", "/"))
        if event_name == "put":
            return assign_path(mirror, segments, payload.get("data"))
        for key, value in (payload.get("data") or {}).items():
            mirror = assign_path(mirror, segments + split_path(key), value)
        return mirror

    @staticmethod
    def _deliver(callback: SnapshotCallback, snapshot: Snapshot) -> None:
        try:
            callback(snapshot)
        except Exception:
            logger.exception("subscription callback failed", path=snapshot.path)

    @staticmethod
    def _fail_stream(opened: asyncio.Future[None], error: RegistryUnavailableError) -> str:
        if not opened.done():
            opened.set_exception(error)
        else:
            logger.warning("subscription stream lost", path=error.path, reason=error.reason)
        return error.reason

    @staticmethod
    def _stream_finished(
        subscription: Subscription,
        on_closed: SubscriptionClosedCallback | None,
        task: asyncio.Task[str],
    ) -> None:
        """Report a stream that ended without the holder cancelling it."""
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("subscription stream crashed", path=subscription.path, exc_info=error)
            reason = repr(error)
        else:
            reason = task.result()
        if not subscription.mark_closed() or on_closed is None:
            return
        try:
            on_closed(reason)
        except Exception:
            logger.exception("subscription close handler failed", path=subscription.path)


def _decode(response: httpx.Response, operation: str, path: str) -> Any:  # noqa: ANN401
    """Parse a JSON response body; a body that is not JSON means the store is not answering as expected."""
    try:
        return response.json()
    except ValueError as e:
        raise RegistryUnavailableError(operation, path, f"invalid JSON response: {e}") from e
