"""Registry subscription lifecycle for the room the local client is in."""

from __future__ import annotations

import functools
import itertools
from typing import TYPE_CHECKING

import structlog

from lobby.rooms.events import ConnectionLostEvent

if TYPE_CHECKING:
    from lobby.registry.protocol import RegistryProtocol
    from lobby.registry.types import Subscription
    from lobby.rooms.events import EventBus
    from lobby.rooms.models import RoomPaths
    from lobby.rooms.session_state import SessionState

logger = structlog.get_logger()


class ConnectionLifecycleManager:
    """Register and tear down the change subscriptions of a room.

    A room gets one subscription on its record and one on its ``gameState``
    child. Registration is all-or-none: if the second subscribe fails, the
    first is cancelled before the error propagates. Each attach gets a new
    generation number; session state drops snapshots of older generations,
    so a callback queued before a detach can never act on the new binding.

    When the store ends one of the subscriptions on its own, the whole set is
    detached and a ``ConnectionLostEvent`` is emitted on ``events``.
    """

    def __init__(
        self,
        registry: RegistryProtocol,
        session_state: SessionState,
        paths: RoomPaths,
        events: EventBus | None = None,
    ) -> None:
        self._registry = registry
        self._session_state = session_state
        self._paths = paths
        self._subscriptions: dict[str, list[Subscription]] = {}  # room_id -> handles
        self._attached_generations: dict[str, int] = {}
        self._generations = itertools.count(1)
        self._events = events

    def is_attached(self, room_id: str) -> bool:
        return room_id in self._subscriptions

    @property
    def attached_rooms(self) -> list[str]:
        return list(self._subscriptions)

    async def attach(self, room_id: str) -> int:
        """Subscribe to ``room_id``. Returns the generation bound into session state."""
        if room_id in self._subscriptions:
            self.detach(room_id)

        generation = next(self._generations)
        self._session_state.bind(room_id, generation)
        handles: list[Subscription] = []
        try:
            handles.append(
                await self._registry.subscribe(
                    self._paths.room(room_id),
                    functools.partial(self._session_state.on_room_snapshot, generation),
                    functools.partial(self._on_subscription_closed, room_id, generation),
                ),
            )
            handles.append(
                await self._registry.subscribe(
                    self._paths.game_state(room_id),
                    functools.partial(self._session_state.on_game_state_snapshot, generation),
                    functools.partial(self._on_subscription_closed, room_id, generation),
                ),
            )
        except BaseException:
            for handle in handles:
                handle.cancel()
            self._session_state.unbind()
            logger.warning("room subscriptions failed, none kept", room_id=room_id)
            raise

        self._subscriptions[room_id] = handles
        self._attached_generations[room_id] = generation
        logger.debug("room subscriptions attached", room_id=room_id, generation=generation)
        return generation

    def detach(self, room_id: str) -> int:
        """Cancel every subscription of ``room_id``. Returns how many were cancelled."""
        handles = self._subscriptions.pop(room_id, [])
        self._attached_generations.pop(room_id, None)
        for handle in handles:
            handle.cancel()
        if self._session_state.room_id == room_id:
            self._session_state.unbind()
        if handles:
            logger.debug("room subscriptions detached", room_id=room_id, count=len(handles))
        return len(handles)

    def detach_all(self) -> int:
        return sum(self.detach(room_id) for room_id in list(self._subscriptions))

    def _on_subscription_closed(self, room_id: str, generation: int, reason: str) -> None:
        # A closure from a replaced or detached attachment is already handled.
        if self._attached_generations.get(room_id) != generation:
            return
        logger.warning("room subscription closed by the store, detaching", room_id=room_id, reason=reason)
        self.detach(room_id)
        if self._events is not None:
            self._events.emit(ConnectionLostEvent(room_id=room_id, reason=reason))
