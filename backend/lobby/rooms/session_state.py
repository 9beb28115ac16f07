"""Local mirror of the current room, fed by registry change notifications."""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

from lobby.rooms.events import (
    GameStartedEvent,
    GameStateUpdatedEvent,
    PlayerJoinedEvent,
    PlayerLeftEvent,
    ReadinessChangedEvent,
    RoomRemovedEvent,
    RoomUpdatedEvent,
    TurnChangedEvent,
)
from lobby.rooms.exceptions import StaleSubscriptionError
from lobby.rooms.models import GUEST_SLOT, HOST_SLOT, GameStateRecord, RoomRecord, RoomStatus

if TYPE_CHECKING:
    from lobby.registry.types import Snapshot
    from lobby.rooms.events import EventBus

logger = structlog.get_logger()


class _SnapshotKind(StrEnum):
    ROOM = "room"
    GAME_STATE = "game_state"


@dataclass(frozen=True)
class _PendingSnapshot:
    generation: int
    kind: _SnapshotKind
    value: Any


class SessionState:
    """Read-only mirror of one room.

    Registry callbacks only enqueue snapshots. A single drain task applies
    them in arrival order and emits change events, so every consumer sees one
    serialized stream regardless of how callbacks interleave with the local
    client's own writes. Session state never decides business rules; it only
    reflects the registry.

    The connection lifecycle manager binds it to ``(room_id, generation)``
    before subscribing. Snapshots tagged with any other generation, or that
    arrive after ``unbind``, are stale and dropped.
    """

    def __init__(self, events: EventBus) -> None:
        self._events = events
        self._queue: asyncio.Queue[_PendingSnapshot] = asyncio.Queue()
        self._drain_task: asyncio.Task[None] | None = None
        self._room_id: str | None = None
        self._generation: int | None = None
        self._room: RoomRecord | None = None
        self._game_state: GameStateRecord | None = None
        self._started_seen = False
        self._removed = False
        self.stale_dropped = 0

    @property
    def room_id(self) -> str | None:
        return self._room_id

    @property
    def generation(self) -> int | None:
        return self._generation

    @property
    def room(self) -> RoomRecord | None:
        return self._room

    @property
    def game_state(self) -> GameStateRecord | None:
        return self._game_state

    @property
    def current_turn(self) -> int | None:
        return self._game_state.current_turn if self._game_state is not None else None

    @property
    def status(self) -> RoomStatus | None:
        """Room status as last mirrored; None before the first snapshot."""
        if self._removed:
            return RoomStatus.REMOVED
        return self._room.status if self._room is not None else None

    def bind(self, room_id: str, generation: int) -> None:
        """Start mirroring ``room_id``; only snapshots of ``generation`` are accepted."""
        self._room_id = room_id
        self._generation = generation
        self._reset_mirror()
        self._ensure_drain_task()

    def unbind(self) -> None:
        """Stop accepting snapshots. Queued ones become stale."""
        self._room_id = None
        self._generation = None
        self._reset_mirror()

    def on_room_snapshot(self, generation: int, snapshot: Snapshot) -> None:
        self._enqueue(_PendingSnapshot(generation, _SnapshotKind.ROOM, snapshot.value))

    def on_game_state_snapshot(self, generation: int, snapshot: Snapshot) -> None:
        self._enqueue(_PendingSnapshot(generation, _SnapshotKind.GAME_STATE, snapshot.value))

    async def drain(self) -> None:
        """Wait until every snapshot queued so far has been applied (or dropped)."""
        self._ensure_drain_task()
        await self._queue.join()

    async def stop(self) -> None:
        if self._drain_task is not None:
            self._drain_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._drain_task
            self._drain_task = None

    # --- internals ---

    def _reset_mirror(self) -> None:
        self._room = None
        self._game_state = None
        self._started_seen = False
        self._removed = False

    def _ensure_drain_task(self) -> None:
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self._drain_loop())

    def _enqueue(self, pending: _PendingSnapshot) -> None:
        self._queue.put_nowait(pending)
        self._ensure_drain_task()

    async def _drain_loop(self) -> None:
        while True:
            pending = await self._queue.get()
            try:
                self._apply(pending)
            except StaleSubscriptionError as e:
                self.stale_dropped += 1
                logger.debug("stale subscription callback dropped", reason=e.message)
            except Exception:
                logger.exception("failed to apply room snapshot", room_id=self._room_id)
            finally:
                self._queue.task_done()

    def _apply(self, pending: _PendingSnapshot) -> None:
        if self._generation is None or pending.generation != self._generation:
            raise StaleSubscriptionError(
                f"{pending.kind} snapshot of generation {pending.generation}, current is {self._generation}",
            )
        if pending.kind == _SnapshotKind.ROOM:
            self._apply_room(pending.value)
        else:
            self._apply_game_state(pending.value)

    def _apply_room(self, value: Any) -> None:  # noqa: ANN401
        room_id = self._room_id or ""
        record = RoomRecord.from_wire(value)
        if record is None:
            if not self._removed:
                self._room = None
                self._removed = True
                logger.info("room removed", room_id=room_id)
                self._events.emit(RoomRemovedEvent(room_id=room_id))
            return

        previous = self._room
        if previous is not None and previous.game_started and not record.game_started:
            logger.warning("ignoring revert of started flag", room_id=room_id)
            record = record.model_copy(update={"game_started": True})

        self._room = record
        self._removed = False
        self._emit_membership_changes(room_id, previous, record)
        self._emit_readiness_changes(room_id, previous, record)
        if record.game_started and not self._started_seen:
            self._started_seen = True
            self._events.emit(GameStartedEvent(room_id=room_id))
        self._events.emit(RoomUpdatedEvent(room=record))

    def _emit_membership_changes(self, room_id: str, previous: RoomRecord | None, record: RoomRecord) -> None:
        previous_guest = previous.player2_id if previous is not None else ""
        if previous_guest == record.player2_id:
            return
        if previous_guest and previous is not None:
            self._events.emit(PlayerLeftEvent(room_id=room_id, player_name=previous.player2_name))
        if record.player2_id:
            self._events.emit(
                PlayerJoinedEvent(room_id=room_id, player_id=record.player2_id, player_name=record.player2_name),
            )

    def _emit_readiness_changes(self, room_id: str, previous: RoomRecord | None, record: RoomRecord) -> None:
        for slot, before, after in (
            (HOST_SLOT, previous.player1_ready if previous else False, record.player1_ready),
            (GUEST_SLOT, previous.player2_ready if previous else False, record.player2_ready),
        ):
            if before != after:
                self._events.emit(ReadinessChangedEvent(room_id=room_id, slot=slot, ready=after))

    def _apply_game_state(self, value: Any) -> None:  # noqa: ANN401
        room_id = self._room_id or ""
        state = GameStateRecord.from_wire(value)
        previous = self._game_state
        self._game_state = state
        if state is None:
            return
        if state.current_turn is not None and (previous is None or previous.current_turn != state.current_turn):
            self._events.emit(TurnChangedEvent(room_id=room_id, player_index=state.current_turn))
        if state.data and (previous is None or previous.data != state.data):
            self._events.emit(GameStateUpdatedEvent(room_id=room_id, payload=state.data))
