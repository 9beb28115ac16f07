"""In-process registry used by tests and by local (single machine) sessions."""

from __future__ import annotations

import asyncio
import copy
import time
from collections import Counter
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from lobby.registry.exceptions import RegistryUnavailableError
from lobby.registry.protocol import DEFAULT_MAX_RERUNS, RegistryProtocol
from lobby.registry.types import SERVER_TIMESTAMP, AtomicOutcome, Snapshot, Subscription, assign_path, split_path

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from lobby.registry.types import SnapshotCallback, SubscriptionClosedCallback, TransactionResult

logger = structlog.get_logger()

_NEVER_DELIVERED = object()


@dataclass
class _Subscriber:
    path: str
    callback: SnapshotCallback
    handle: Subscription
    on_closed: SubscriptionClosedCallback | None = None
    last_value: Any = _NEVER_DELIVERED


def _normalize(value: Any, now_ms: int) -> Any:  # noqa: ANN401
    """Resolve server timestamps and drop empty/None children, as the hosted store does."""
    if value == SERVER_TIMESTAMP:
        return now_ms
    if isinstance(value, dict):
        cleaned = {}
        for key, child in value.items():
            normalized = _normalize(child, now_ms)
            if normalized is not None:
                cleaned[str(key)] = normalized
        return cleaned or None
    return copy.deepcopy(value)


class InMemoryRegistry(RegistryProtocol):
    """Single-process implementation of the shared store.

    Values live in one nested dict tree addressed by slash-separated paths.
    Change callbacks are scheduled with ``call_soon`` so they arrive after the
    mutating call has returned, the way remote notifications do. Every call
    yields to the event loop (or sleeps ``latency`` seconds) before touching
    the tree, which lets concurrent callers interleave.

    With ``placeholder_first`` the first invocation of a transaction's mutate
    function receives None, mimicking a client SDK that has not loaded the
    path yet; the store then reruns the function with the stored value.
    """

    def __init__(
        self,
        *,
        latency: float = 0.0,
        placeholder_first: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._tree: Any = None
        self._latency = latency
        self._placeholder_first = placeholder_first
        self._clock = clock
        self._available = True
        self._subscribers: dict[int, _Subscriber] = {}
        self._next_subscriber_id = 0
        self.operation_counts: Counter[str] = Counter()

    @property
    def available(self) -> bool:
        return self._available

    def set_available(self, available: bool) -> None:  # noqa: FBT001
        """Simulate losing (or regaining) the network connection to the store."""
        self._available = available

    def drop_subscriptions(self, reason: str = "connection lost") -> int:
        """Simulate the store ending every open subscription. Returns how many were dropped."""
        dropped = list(self._subscribers.values())
        self._subscribers.clear()
        loop = asyncio.get_running_loop()
        for subscriber in dropped:
            if subscriber.handle.mark_closed() and subscriber.on_closed is not None:
                loop.call_soon(self._report_closed, subscriber, reason)
        return len(dropped)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def peek(self, path: str) -> Any:  # noqa: ANN401
        """Return a copy of the stored value without a round trip (test inspection)."""
        return copy.deepcopy(self._get(path))

    # --- RegistryProtocol ---

    async def read(self, path: str) -> Any:  # noqa: ANN401
        await self._round_trip("read", path)
        return copy.deepcopy(self._get(path))

    async def write(self, path: str, value: Any) -> None:  # noqa: ANN401
        await self._round_trip("write", path)
        self._tree = assign_path(self._tree, split_path(path), _normalize(value, self._now_ms()))
        self._notify()

    async def update(self, path: str, values: Mapping[str, Any]) -> None:
        await self._round_trip("update", path)
        now_ms = self._now_ms()
        base = split_path(path)
        for key, value in values.items():
            self._tree = assign_path(self._tree, base + split_path(key), _normalize(value, now_ms))
        self._notify()

    async def remove(self, path: str) -> None:
        await self._round_trip("remove", path)
        self._tree = assign_path(self._tree, split_path(path), None)
        self._notify()

    async def subscribe(
        self,
        path: str,
        callback: SnapshotCallback,
        on_closed: SubscriptionClosedCallback | None = None,
    ) -> Subscription:
        await self._round_trip("subscribe", path)
        subscriber_id = self._next_subscriber_id
        self._next_subscriber_id += 1
        handle = Subscription(path=path, _on_cancel=lambda: self._subscribers.pop(subscriber_id, None))
        subscriber = _Subscriber(path=path, callback=callback, handle=handle, on_closed=on_closed)
        self._subscribers[subscriber_id] = subscriber
        self._schedule(subscriber, self._get(path))
        return handle

    async def run_atomic(
        self,
        path: str,
        mutate: Callable[[Any], TransactionResult],
        *,
        max_reruns: int = DEFAULT_MAX_RERUNS,
    ) -> AtomicOutcome:
        await self._round_trip("run_atomic", path)
        seen = None if self._placeholder_first else copy.deepcopy(self._get(path))
        for invocation in range(1, max_reruns + 1):
            result = mutate(copy.deepcopy(seen))
            if result.aborted:
                return AtomicOutcome(committed=False, snapshot=copy.deepcopy(self._get(path)), reruns=invocation)

            proposed = _normalize(result.value, self._now_ms())
            await self._round_trip("commit", path)

            current = self._get(path)
            if current == seen:
                self._tree = assign_path(self._tree, split_path(path), proposed)
                self._notify()
                return AtomicOutcome(committed=True, snapshot=copy.deepcopy(self._get(path)), reruns=invocation)
            seen = copy.deepcopy(current)

        logger.warning("transaction rerun budget exhausted", path=path, max_reruns=max_reruns)
        return AtomicOutcome(committed=False, snapshot=copy.deepcopy(self._get(path)), reruns=max_reruns)

    async def aclose(self) -> None:
        self._subscribers.clear()

    # --- internals ---

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _get(self, path: str) -> Any:  # noqa: ANN401
        node = self._tree
        for segment in split_path(path):
            if not isinstance(node, dict) or segment not in node:
                return None
            node = node[segment]
        return node

    async def _round_trip(self, operation: str, path: str) -> None:
        if not self._available:
            raise RegistryUnavailableError(operation, path, "store offline")
        self.operation_counts[operation] += 1
        await asyncio.sleep(self._latency)
        if not self._available:
            raise RegistryUnavailableError(operation, path, "connection lost")

    def _notify(self) -> None:
        for subscriber in list(self._subscribers.values()):
            value = self._get(subscriber.path)
            if subscriber.last_value is _NEVER_DELIVERED or value != subscriber.last_value:
                self._schedule(subscriber, value)

    def _schedule(self, subscriber: _Subscriber, value: Any) -> None:  # noqa: ANN401
        subscriber.last_value = copy.deepcopy(value)
        snapshot = Snapshot(path=subscriber.path, value=copy.deepcopy(value))
        asyncio.get_running_loop().call_soon(self._deliver, subscriber, snapshot)

    @staticmethod
    def _report_closed(subscriber: _Subscriber, reason: str) -> None:
        try:
            subscriber.on_closed(reason)
        except Exception:
            logger.exception("subscription close handler failed", path=subscriber.path)

    @staticmethod
    def _deliver(subscriber: _Subscriber, snapshot: Snapshot) -> None:
        try:
            subscriber.callback(snapshot)
        except Exception:
            logger.exception("subscription callback failed", path=subscriber.path)
