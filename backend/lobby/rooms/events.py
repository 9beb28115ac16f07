"""Room change events and the observer bus that delivers them."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from enum import StrEnum
from typing import TYPE_CHECKING, Literal

import structlog
from pydantic import BaseModel

from lobby.rooms.models import RoomRecord  # noqa: TC001

if TYPE_CHECKING:
    from types import TracebackType

logger = structlog.get_logger()


class RoomEventType(StrEnum):
    ROOM_UPDATED = "room_updated"
    PLAYER_JOINED = "player_joined"
    PLAYER_LEFT = "player_left"
    READINESS_CHANGED = "readiness_changed"
    GAME_STARTED = "game_started"
    ROOM_REMOVED = "room_removed"
    ROOM_LEFT = "room_left"
    TURN_CHANGED = "turn_changed"
    GAME_STATE_UPDATED = "game_state_updated"
    CONNECTION_LOST = "connection_lost"


class RoomUpdatedEvent(BaseModel):
    type: Literal[RoomEventType.ROOM_UPDATED] = RoomEventType.ROOM_UPDATED
    room: RoomRecord


class PlayerJoinedEvent(BaseModel):
    type: Literal[RoomEventType.PLAYER_JOINED] = RoomEventType.PLAYER_JOINED
    room_id: str
    player_id: str
    player_name: str


class PlayerLeftEvent(BaseModel):
    type: Literal[RoomEventType.PLAYER_LEFT] = RoomEventType.PLAYER_LEFT
    room_id: str
    player_name: str


class ReadinessChangedEvent(BaseModel):
    type: Literal[RoomEventType.READINESS_CHANGED] = RoomEventType.READINESS_CHANGED
    room_id: str
    slot: int
    ready: bool


class GameStartedEvent(BaseModel):
    type: Literal[RoomEventType.GAME_STARTED] = RoomEventType.GAME_STARTED
    room_id: str


class RoomRemovedEvent(BaseModel):
    type: Literal[RoomEventType.ROOM_REMOVED] = RoomEventType.ROOM_REMOVED
    room_id: str


class RoomLeftEvent(BaseModel):
    """Local membership ended (explicit leave or teardown)."""

    type: Literal[RoomEventType.ROOM_LEFT] = RoomEventType.ROOM_LEFT
    room_id: str


class TurnChangedEvent(BaseModel):
    type: Literal[RoomEventType.TURN_CHANGED] = RoomEventType.TURN_CHANGED
    room_id: str
    player_index: int


class GameStateUpdatedEvent(BaseModel):
    type: Literal[RoomEventType.GAME_STATE_UPDATED] = RoomEventType.GAME_STATE_UPDATED
    room_id: str
    payload: str


class ConnectionLostEvent(BaseModel):
    """The store ended a room subscription; every subscription of the room was detached."""

    type: Literal[RoomEventType.CONNECTION_LOST] = RoomEventType.CONNECTION_LOST
    room_id: str
    reason: str


RoomEvent = (
    RoomUpdatedEvent
    | PlayerJoinedEvent
    | PlayerLeftEvent
    | ReadinessChangedEvent
    | GameStartedEvent
    | RoomRemovedEvent
    | RoomLeftEvent
    | TurnChangedEvent
    | GameStateUpdatedEvent
    | ConnectionLostEvent
)

EventHandler = Callable[[RoomEvent], None]


class EventSubscription:
    """Disposable handle returned by ``EventBus.subscribe``."""

    def __init__(self, bus: EventBus, event_type: RoomEventType, handler: EventHandler) -> None:
        self._bus = bus
        self._event_type = event_type
        self._handler = handler
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._bus._remove(self._event_type, self._handler)  # noqa: SLF001

    def __enter__(self) -> EventSubscription:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.dispose()


class EventBus:
    """Synchronous observer registry keyed by event type.

    Handlers run in subscription order. A failing handler is logged and the
    remaining handlers still run; nothing propagates back to the emitter.
    """

    def __init__(self) -> None:
        self._handlers: dict[RoomEventType, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: RoomEventType, handler: EventHandler) -> EventSubscription:
        self._handlers[event_type].append(handler)
        return EventSubscription(self, event_type, handler)

    def handler_count(self, event_type: RoomEventType) -> int:
        return len(self._handlers.get(event_type, ()))

    def emit(self, event: RoomEvent) -> None:
        for handler in list(self._handlers.get(event.type, ())):
            try:
                handler(event)
            except Exception:
                logger.exception("room event handler failed", event_type=event.type)

    def _remove(self, event_type: RoomEventType, handler: EventHandler) -> None:
        handlers = self._handlers.get(event_type)
        if handlers and handler in handlers:
            handlers.remove(handler)
