"""Abstract interface to the remote shared store."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from lobby.registry.types import (
        AtomicOutcome,
        SnapshotCallback,
        Subscription,
        SubscriptionClosedCallback,
        TransactionResult,
    )

DEFAULT_MAX_RERUNS = 25


class RegistryProtocol(ABC):
    """
    Abstract interface for the shared room registry.

    This abstraction lets the room coordinator run against an in-process
    store in tests and against a hosted database in production. Every method
    may raise RegistryUnavailableError on transport failure.
    """

    @abstractmethod
    async def read(self, path: str) -> Any:  # noqa: ANN401
        """
        Return the value stored at ``path``, or None when it is empty.
        """
        ...

    @abstractmethod
    async def write(self, path: str, value: Any) -> None:  # noqa: ANN401
        """
        Replace the value at ``path`` in a single all-or-nothing write.
        """
        ...

    @abstractmethod
    async def update(self, path: str, values: Mapping[str, Any]) -> None:
        """
        Merge ``values`` into the record at ``path``.

        Keys may be nested child paths such as ``"gameState/currentTurn"``.
        """
        ...

    @abstractmethod
    async def remove(self, path: str) -> None:
        """
        Delete the value at ``path`` and everything below it.
        """
        ...

    @abstractmethod
    async def subscribe(
        self,
        path: str,
        callback: SnapshotCallback,
        on_closed: SubscriptionClosedCallback | None = None,
    ) -> Subscription:
        """
        Deliver the current value and every later change at ``path`` to ``callback``.

        If the store ends the subscription by itself, the handle turns
        inactive and ``on_closed`` receives the reason. A subscription the
        holder cancels is never reported as closed.
        """
        ...

    @abstractmethod
    async def run_atomic(
        self,
        path: str,
        mutate: Callable[[Any], TransactionResult],
        *,
        max_reruns: int = DEFAULT_MAX_RERUNS,
    ) -> AtomicOutcome:
        """
        Compare-and-mutate the value at ``path``.

        ``mutate`` may be invoked several times: first possibly with a
        placeholder (None) and again with the stored value whenever the value
        it saw turned out to be stale. The commit only happens if nothing
        changed since ``mutate`` last looked.
        """
        ...

    async def aclose(self) -> None:
        """
        Release network resources. Cancels every live subscription.
        """
        return
