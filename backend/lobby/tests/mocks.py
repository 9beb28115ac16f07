"""Test doubles for the shared registry."""

from __future__ import annotations

import asyncio
from collections import Counter
from typing import TYPE_CHECKING, Any

from lobby.registry.exceptions import RegistryUnavailableError
from lobby.registry.memory import InMemoryRegistry
from lobby.registry.types import AtomicOutcome

if TYPE_CHECKING:
    from collections.abc import Callable

    from lobby.registry.types import SnapshotCallback, Subscription, SubscriptionClosedCallback, TransactionResult


async def settle(rounds: int = 10) -> None:
    """Let queued callbacks and drain tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FlakyRegistry(InMemoryRegistry):
    """In-memory registry that fails the next N calls of chosen operations."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._failures: Counter[str] = Counter()

    def fail_next(self, operation: str, times: int = 1) -> None:
        self._failures[operation] += times

    def _maybe_fail(self, operation: str, path: str) -> None:
        if self._failures[operation] > 0:
            self._failures[operation] -= 1
            raise RegistryUnavailableError(operation, path, "injected failure")

    async def read(self, path: str) -> Any:
        self._maybe_fail("read", path)
        return await super().read(path)

    async def remove(self, path: str) -> None:
        self._maybe_fail("remove", path)
        await super().remove(path)

    async def subscribe(
        self,
        path: str,
        callback: SnapshotCallback,
        on_closed: SubscriptionClosedCallback | None = None,
    ) -> Subscription:
        self._maybe_fail("subscribe", path)
        return await super().subscribe(path, callback, on_closed)

    async def run_atomic(self, path: str, mutate: Callable[[Any], TransactionResult], **kwargs: Any) -> AtomicOutcome:
        self._maybe_fail("run_atomic", path)
        return await super().run_atomic(path, mutate, **kwargs)


class PhantomCommitRegistry(InMemoryRegistry):
    """Reports every transaction as committed without writing anything.

    Models a store whose commit acknowledgement cannot be trusted, so callers
    must verify the stored value themselves.
    """

    async def run_atomic(self, path: str, mutate: Callable[[Any], TransactionResult], **kwargs: Any) -> AtomicOutcome:
        current = await self.read(path)
        result = mutate(current)
        return AtomicOutcome(committed=True, snapshot=result.value, reruns=1)


class PlaceholderOnlyRegistry(InMemoryRegistry):
    """Keeps handing the mutate function the placeholder and never the real value."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.mutate_calls = 0

    async def run_atomic(
        self,
        path: str,
        mutate: Callable[[Any], TransactionResult],
        *,
        max_reruns: int = 25,
    ) -> AtomicOutcome:
        for invocation in range(1, max_reruns + 1):
            self.mutate_calls += 1
            result = mutate(None)
            if result.aborted:
                return AtomicOutcome(committed=False, snapshot=await self.read(path), reruns=invocation)
            await asyncio.sleep(0)
        return AtomicOutcome(committed=False, snapshot=await self.read(path), reruns=max_reruns)
