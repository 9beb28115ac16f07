"""Turn hand-off between the two members of a started room."""

from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from lobby.registry.exceptions import RegistryError
from lobby.registry.types import SERVER_TIMESTAMP, join_path
from lobby.rooms.events import RoomEventType
from lobby.rooms.exceptions import InvalidTurnError, NotInRoomError
from lobby.rooms.models import GUEST_SLOT, HOST_SLOT, RoomResult
from lobby.turns.timer import TurnCountdown

if TYPE_CHECKING:
    from collections.abc import Callable

    from lobby.registry.protocol import RegistryProtocol
    from lobby.rooms.events import (
        EventBus,
        EventSubscription,
        GameStartedEvent,
        RoomLeftEvent,
        RoomRemovedEvent,
        TurnChangedEvent,
    )
    from lobby.rooms.manager import RoomCoordinator
    from lobby.rooms.session_state import SessionState
    from lobby.settings import RoomSettings

logger = structlog.get_logger()

TURN_TIME_REMAINING_KEY = "turnTimeRemaining"
SERVER_TIME_KEY = "serverTime"


def next_player(index: int) -> int:
    return GUEST_SLOT if index == HOST_SLOT else HOST_SLOT


@dataclass
class TurnState:
    current_player_index: int = HOST_SLOT
    turn_deadline: float | None = None
    authoritative_remaining: float = 0.0


class TurnSynchronizer:
    """
    Keep both members agreeing on whose turn it is.

    The host is authoritative for the countdown: every sync interval it
    pushes its remaining time, and the guest reads it back and re-arms its
    own countdown. A turn advances on exactly one of: the local countdown
    expiring (host only; the guest waits for the host's change), an
    explicit ``end_turn`` from the active player, or a remote turn change
    that disagrees with the local index (remote wins).
    """

    def __init__(
        self,
        registry: RegistryProtocol,
        coordinator: RoomCoordinator,
        session_state: SessionState,
        events: EventBus,
        settings: RoomSettings,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._registry = registry
        self._coordinator = coordinator
        self._session_state = session_state
        self._settings = settings
        self._countdown = TurnCountdown(clock)
        self._state: TurnState | None = None
        self._room_id: str | None = None
        self._sync_task: asyncio.Task[None] | None = None
        self._subscriptions: list[EventSubscription] = [
            events.subscribe(RoomEventType.GAME_STARTED, self._on_game_started),
            events.subscribe(RoomEventType.TURN_CHANGED, self._on_turn_changed),
            events.subscribe(RoomEventType.ROOM_LEFT, self._on_room_ended),
            events.subscribe(RoomEventType.ROOM_REMOVED, self._on_room_ended),
        ]

    @property
    def active(self) -> bool:
        return self._state is not None

    @property
    def state(self) -> TurnState | None:
        return self._state

    @property
    def remaining(self) -> float:
        return self._countdown.remaining

    @property
    def is_local_turn(self) -> bool:
        slot = self._coordinator.membership.local_slot
        return self._state is not None and slot is not None and self._state.current_player_index == slot

    @property
    def is_authoritative(self) -> bool:
        return self._coordinator.membership.is_host

    def start(self, room_id: str, current_player_index: int = HOST_SLOT) -> None:
        """Begin turn tracking for ``room_id`` with a full turn for ``current_player_index``."""
        self.stop()
        self._room_id = room_id
        self._state = TurnState(current_player_index=current_player_index)
        self._begin_turn(self._settings.turn_duration_seconds)
        self._sync_task = asyncio.create_task(self._sync_loop())
        self._sync_task.add_done_callback(self._on_sync_done)
        logger.info("turn sync started", room_id=room_id, player_index=current_player_index)

    def stop(self) -> None:
        self._countdown.stop()
        if self._sync_task is not None and not self._sync_task.done():
            self._sync_task.cancel()
        if self._state is not None:
            logger.info("turn sync stopped", room_id=self._room_id)
        self._state = None
        self._room_id = None

    async def aclose(self) -> None:
        self.stop()
        for subscription in self._subscriptions:
            subscription.dispose()
        if self._sync_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._sync_task
            self._sync_task = None

    async def end_turn(self) -> RoomResult:
        """Hand the turn to the other player. Only the active local player may call this."""
        try:
            if self._state is None:
                raise NotInRoomError("no game in progress")
            if not self.is_local_turn:
                raise InvalidTurnError("not the local player's turn")
        except (NotInRoomError, InvalidTurnError) as e:
            return RoomResult.failure(e, self._room_id)
        return await self._advance("end_turn")

    # --- event handlers ---

    def _on_game_started(self, event: GameStartedEvent) -> None:
        if self._coordinator.membership.room_id != event.room_id:
            return
        self.start(event.room_id, self._session_state.current_turn or HOST_SLOT)

    def _on_turn_changed(self, event: TurnChangedEvent) -> None:
        if self._state is None or event.room_id != self._room_id:
            return
        if event.player_index not in (HOST_SLOT, GUEST_SLOT):
            logger.warning("ignoring out-of-range turn index", room_id=event.room_id, player_index=event.player_index)
            return
        if event.player_index == self._state.current_player_index:
            return
        logger.info(
            "remote turn change",
            room_id=event.room_id,
            previous=self._state.current_player_index,
            player_index=event.player_index,
        )
        self._state.current_player_index = event.player_index
        self._begin_turn(self._settings.turn_duration_seconds)

    def _on_room_ended(self, event: RoomLeftEvent | RoomRemovedEvent) -> None:
        if self._room_id is not None and event.room_id == self._room_id:
            self.stop()

    # --- turn advancement ---

    def _begin_turn(self, seconds: float) -> None:
        self._countdown.start(seconds, self._on_timeout)
        if self._state is not None:
            self._state.turn_deadline = self._countdown.deadline
            self._state.authoritative_remaining = seconds

    async def _on_timeout(self) -> None:
        if self._state is None:
            return
        if not self.is_authoritative:
            logger.debug("turn expired locally, waiting for host", room_id=self._room_id)
            return
        await self._advance("timeout")

    async def _advance(self, reason: str) -> RoomResult:
        state = self._state
        room_id = self._room_id
        state.current_player_index = next_player(state.current_player_index)
        self._begin_turn(self._settings.turn_duration_seconds)
        logger.info("turn advanced", room_id=room_id, player_index=state.current_player_index, reason=reason)
        result = await self._coordinator.send_turn_change(state.current_player_index)
        if not result.ok:
            logger.warning("failed to publish turn change", room_id=room_id, error=result.error)
        return result

    # --- periodic sync ---

    async def _sync_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.turn_sync_interval_seconds)
            await self.sync_once()

    async def sync_once(self) -> None:
        """Push (host) or pull (guest) the authoritative remaining time once."""
        room_id = self._room_id
        if self._state is None or room_id is None:
            return
        path = self._coordinator.paths.game_state(room_id)
        try:
            if self.is_authoritative:
                remaining = round(self._countdown.remaining, 3)
                await self._registry.update(path, {TURN_TIME_REMAINING_KEY: remaining, SERVER_TIME_KEY: SERVER_TIMESTAMP})
                self._state.authoritative_remaining = remaining
            else:
                value = await self._registry.read(join_path(path, TURN_TIME_REMAINING_KEY))
                if isinstance(value, int | float) and not isinstance(value, bool) and self._state is not None:
                    self._state.authoritative_remaining = float(value)
                    self._countdown.reset(float(value))
                    self._state.turn_deadline = self._countdown.deadline
        except RegistryError:
            logger.warning("turn sync failed", room_id=room_id, exc_info=True)

    @staticmethod
    def _on_sync_done(task: asyncio.Task[None]) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error("turn sync loop crashed", exc_info=task.exception())
