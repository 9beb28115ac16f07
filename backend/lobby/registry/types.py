"""Value types shared by all registry adapters."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

# Resolved by the store to its own clock (epoch milliseconds) on write.
SERVER_TIMESTAMP: dict[str, str] = {".sv": "timestamp"}


@dataclass(frozen=True)
class Snapshot:
    """Value observed at a registry path. ``value`` is None when the path is empty."""

    path: str
    value: Any = None

    @property
    def exists(self) -> bool:
        return self.value is not None


@dataclass(frozen=True)
class TransactionResult:
    """Return value of a compare-and-mutate function.

    ``success(value)`` asks the store to commit ``value`` (None keeps/makes the
    path empty). ``abort()`` ends the transaction without writing anything.
    """

    aborted: bool
    value: Any = None

    @classmethod
    def success(cls, value: Any) -> TransactionResult:  # noqa: ANN401
        return cls(aborted=False, value=value)

    @classmethod
    def abort(cls) -> TransactionResult:
        return cls(aborted=True)


@dataclass(frozen=True)
class AtomicOutcome:
    """Result of ``run_atomic``.

    ``snapshot`` is the stored value after the transaction settled: the
    committed value when ``committed`` is True, the current value otherwise.
    ``reruns`` counts how many times the mutate function was invoked.
    """

    committed: bool
    snapshot: Any = None
    reruns: int = 0


# Callback invoked with every value change at a subscribed path.
SnapshotCallback = Callable[[Snapshot], None]

# Invoked at most once, with a reason, when the store ends a subscription on
# its own. Never invoked after the holder called ``cancel()``.
SubscriptionClosedCallback = Callable[[str], None]


@dataclass
class Subscription:
    """Disposable handle for a change subscription.

    ``cancel()`` is idempotent. Callbacks the store already queued before the
    cancel may still be delivered; consumers must treat them as stale.
    """

    path: str
    _on_cancel: Callable[[], None] | None = field(default=None, repr=False)
    active: bool = True

    def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        if self._on_cancel is not None:
            self._on_cancel()
            self._on_cancel = None

    def mark_closed(self) -> bool:
        """Record that the store ended the subscription.

        Returns False when the handle was already inactive, so a closure is
        reported once at most and never after a local cancel.
        """
        if not self.active:
            return False
        self.active = False
        self._on_cancel = None
        return True


def split_path(path: str) -> list[str]:
    """Split a slash-separated registry path into non-empty segments."""
    return [segment for segment in path.strip("/").split("/") if segment]


def join_path(*parts: str) -> str:
    return "/".join(segment for part in parts for segment in split_path(part))


def assign_path(node: Any, segments: list[str], value: Any) -> Any:  # noqa: ANN401
    """Return a copy of ``node`` with ``value`` placed at ``segments``.

    A None value deletes the child; parents left empty are pruned, so an
    empty tree is represented as None.
    """
    if not segments:
        return value
    head, *rest = segments
    base = dict(node) if isinstance(node, dict) else {}
    child = assign_path(base.get(head), rest, value)
    if child is None:
        base.pop(head, None)
    else:
        base[head] = child
    return base or None
