"""Room coordinator: create, join, leave and start two-player rooms."""

from __future__ import annotations

import asyncio
import functools
from typing import TYPE_CHECKING, Any

import structlog

from lobby.registry.exceptions import RegistryError
from lobby.registry.types import TransactionResult, join_path
from lobby.rooms.events import RoomEventType, RoomLeftEvent
from lobby.rooms.exceptions import (
    AlreadyInRoomError,
    ConflictExhaustedError,
    GameAlreadyStartedError,
    InvalidTurnError,
    NotAllReadyError,
    NotHostError,
    NotInRoomError,
    RoomError,
    RoomFullError,
    RoomNotFoundError,
    RoomStoreUnavailableError,
)
from lobby.rooms.models import (
    CURRENT_TURN_KEY,
    DEFAULT_PLAYER2_NAME,
    GAME_STATE_KEY,
    GUEST_CLEARED_FIELDS,
    GUEST_SLOT,
    HOST_FALLBACK_FIELDS,
    HOST_SLOT,
    NO_MEMBERSHIP,
    Membership,
    RoomPaths,
    RoomRecord,
    RoomResult,
    RoomStatus,
    generate_room_id,
    ready_field,
)
from shared.logging import bind_room_context, clear_room_context
from shared.storage import LocalAssociation

if TYPE_CHECKING:
    from lobby.identity.provider import IdentityProvider
    from lobby.registry.protocol import RegistryProtocol
    from lobby.rooms.connections import ConnectionLifecycleManager
    from lobby.rooms.events import ConnectionLostEvent, EventBus, RoomRemovedEvent
    from lobby.rooms.session_state import SessionState
    from lobby.settings import RoomSettings
    from shared.storage import AssociationStore

logger = structlog.get_logger()

GAME_DATA_KEY = "data"


def _claim_guest_slot(player_id: str, player_name: str, current: Any) -> TransactionResult:  # noqa: ANN401
    """Write the caller into slot 2 if the room is still open.

    None is the store's placeholder for a value it has not loaded yet: answer
    "no change" so the store reruns with the real record instead of aborting
    on a precondition nobody has evaluated.
    """
    if current is None:
        return TransactionResult.success(None)
    record = RoomRecord.from_wire(current)
    if record is None or record.game_started:
        return TransactionResult.abort()
    if record.player2_id == player_id:
        return TransactionResult.success(current)
    if record.player2_id:
        return TransactionResult.abort()
    return TransactionResult.success(
        {**current, "player2Id": player_id, "player2Name": player_name, "player2Ready": False},
    )


def _release_guest_slot(player_id: str, current: Any) -> TransactionResult:  # noqa: ANN401
    """Clear slot 2, but only while it still holds ``player_id``."""
    if current is None:
        return TransactionResult.success(None)
    record = RoomRecord.from_wire(current)
    if record is None or record.player2_id != player_id:
        return TransactionResult.abort()
    return TransactionResult.success({**current, **GUEST_CLEARED_FIELDS})


def _start_game(current: Any) -> TransactionResult:  # noqa: ANN401
    if current is None:
        return TransactionResult.success(None)
    record = RoomRecord.from_wire(current)
    if record is None or record.game_started or not record.both_ready:
        return TransactionResult.abort()
    game_state = current.get(GAME_STATE_KEY)
    game_state = dict(game_state) if isinstance(game_state, dict) else {}
    game_state[CURRENT_TURN_KEY] = HOST_SLOT
    return TransactionResult.success({**current, "gameStarted": True, GAME_STATE_KEY: game_state})


def _check_joinable(record: RoomRecord | None, room_id: str) -> None:
    if record is None:
        raise RoomNotFoundError(f"room {room_id} does not exist")
    if record.game_started:
        raise GameAlreadyStartedError(f"room {room_id} has already started")
    if record.has_guest:
        raise RoomFullError(f"room {room_id} is full")


class RoomCoordinator:
    """Owns the local client's room membership.

    Every public operation returns a RoomResult; expected failures are
    RoomError subclasses raised internally and converted at this boundary.
    Membership-changing operations run one at a time per client. Mutual
    exclusion between clients comes only from the registry's atomic
    primitive, never from a local lock.
    """

    def __init__(
        self,
        registry: RegistryProtocol,
        identity: IdentityProvider,
        lifecycle: ConnectionLifecycleManager,
        session_state: SessionState,
        events: EventBus,
        associations: AssociationStore,
        settings: RoomSettings,
        *,
        online_mode: bool = True,
    ) -> None:
        self._registry = registry
        self._identity = identity
        self._lifecycle = lifecycle
        self._session_state = session_state
        self._events = events
        self._associations = associations
        self._settings = settings
        self._paths = RoomPaths(settings.rooms_root)
        self._online_mode = online_mode
        self._membership = NO_MEMBERSHIP
        self._membership_lock = asyncio.Lock()
        self._restore_tasks: set[asyncio.Task[None]] = set()
        self._event_subscriptions = [
            events.subscribe(RoomEventType.ROOM_REMOVED, self._on_room_removed),
            events.subscribe(RoomEventType.CONNECTION_LOST, self._on_connection_lost),
        ]

    @property
    def membership(self) -> Membership:
        return self._membership

    @property
    def is_online_mode(self) -> bool:
        return self._online_mode

    @property
    def player_id(self) -> str | None:
        return self._identity.identity

    @property
    def player_number(self) -> int | None:
        return self._membership.local_slot

    @property
    def paths(self) -> RoomPaths:
        return self._paths

    # --- create / join ---

    async def create_room(self, host_name: str = "") -> RoomResult:
        """Create a room with the local player as host and return its id."""
        async with self._membership_lock:
            try:
                player_id = await self._wait_identity()
                if self._membership.active:
                    raise AlreadyInRoomError(f"already in room {self._membership.room_id}")
                room_id = generate_room_id()
                record = RoomRecord.for_host(room_id, player_id, host_name)
                await self._call(self._registry.write(self._paths.room(room_id), record.to_wire()))
                try:
                    await self._call(self._lifecycle.attach(room_id))
                except BaseException:
                    await asyncio.shield(self._remove_room(room_id))
                    raise
            except RoomError as e:
                return self._failure("create_room", e)

            self._enter(Membership.host(room_id), player_id, record.player1_name, "")
            logger.info("room created", room_id=room_id, player_id=player_id)
            return RoomResult.success(room_id)

    async def join_room(self, room_id: str | None = None, player_name: str | None = None) -> RoomResult:
        """Join ``room_id``, or the first open room when no id is given."""
        async with self._membership_lock:
            try:
                player_id = await self._wait_identity()
                name = player_name or DEFAULT_PLAYER2_NAME
                if self._membership.active:
                    if room_id is not None and room_id == self._membership.room_id:
                        return RoomResult.success(room_id)
                    raise AlreadyInRoomError(f"already in room {self._membership.room_id}")
                if room_id is None:
                    record = await self._auto_match(player_id, name)
                else:
                    record = await self._join(room_id, player_id, name)
            except RoomError as e:
                return self._failure("join_room", e, room_id)

            self._enter(Membership.guest(record.room_id), player_id, record.player1_name, name)
            if self._session_state.status == RoomStatus.REMOVED:
                return self._abandon_removed("join_room", record.room_id)
            logger.info("room joined", room_id=record.room_id, player_id=player_id)
            return RoomResult.success(record.room_id)

    async def list_open_rooms(self) -> RoomResult:
        """Rooms a join without an id would try, in listing order."""
        try:
            player_id = self._identity.identity or ""
            rooms = await self._open_rooms(exclude_host=player_id)
        except RoomError as e:
            return self._failure("list_open_rooms", e)
        return RoomResult.success(rooms=tuple(rooms))

    async def resume_room(self) -> RoomResult:
        """Restore the membership saved before a local restart, if it is still valid."""
        async with self._membership_lock:
            association = self._associations.load()
            try:
                if association is None:
                    raise NotInRoomError("no saved room to resume")
                if self._membership.active:
                    if self._membership.room_id == association.room_id:
                        return RoomResult.success(association.room_id)
                    raise AlreadyInRoomError(f"already in room {self._membership.room_id}")
                player_id = await self._wait_identity()
                room_id = association.room_id
                record = RoomRecord.from_wire(await self._call(self._registry.read(self._paths.room(room_id))))
                slot = record.slot_of(player_id) if record is not None else None
                if record is None or association.player_id != player_id or slot != association.player_number:
                    self._associations.clear()
                    raise RoomNotFoundError(f"saved room {room_id} is gone or no longer holds this player")
                await self._call(self._lifecycle.attach(room_id))
            except RoomError as e:
                return self._failure("resume_room", e, association.room_id if association else None)

            membership = Membership.host(room_id) if slot == HOST_SLOT else Membership.guest(room_id)
            self._enter(membership, player_id, record.player1_name, record.player2_name)
            if self._session_state.status == RoomStatus.REMOVED:
                return self._abandon_removed("resume_room", room_id)
            logger.info("room resumed", room_id=room_id, slot=slot)
            return RoomResult.success(room_id)

    # --- in-room operations ---

    async def set_ready(self, ready: bool = True) -> RoomResult:  # noqa: FBT001, FBT002
        membership = self._membership
        try:
            room_id = self._require_membership()
            if self._session_state.status == RoomStatus.REMOVED:
                raise RoomNotFoundError(f"room {room_id} was removed")
            await self._call(self._registry.update(self._paths.room(room_id), {ready_field(membership.local_slot): ready}))
        except RoomError as e:
            return self._failure("set_ready", e, membership.room_id)
        logger.info("readiness set", room_id=room_id, ready=ready)
        return RoomResult.success(room_id)

    async def start_game(self) -> RoomResult:
        """Host-only: atomically flip the started flag once both players are ready."""
        membership = self._membership
        try:
            room_id = self._require_membership()
            if not membership.is_host:
                raise NotHostError("only the host can start the game")
            outcome = await self._call(
                self._registry.run_atomic(
                    self._paths.room(room_id),
                    _start_game,
                    max_reruns=self._settings.transaction_max_reruns,
                ),
            )
            record = RoomRecord.from_wire(outcome.snapshot)
            if record is None:
                raise RoomNotFoundError(f"room {room_id} does not exist")
            if not outcome.committed:
                if record.game_started:
                    raise GameAlreadyStartedError(f"room {room_id} has already started")
                if not record.both_ready:
                    raise NotAllReadyError("both players must be ready")
                raise ConflictExhaustedError(room_id, outcome.reruns)
        except RoomError as e:
            return self._failure("start_game", e, membership.room_id)
        logger.info("game started", room_id=room_id)
        return RoomResult.success(room_id)

    async def send_turn_change(self, next_player_index: int) -> RoomResult:
        membership = self._membership
        try:
            room_id = self._require_membership()
            if next_player_index not in (HOST_SLOT, GUEST_SLOT):
                raise InvalidTurnError(f"player index must be 1 or 2, got {next_player_index}")
            path = join_path(self._paths.game_state(room_id), CURRENT_TURN_KEY)
            await self._call(self._registry.write(path, next_player_index))
        except RoomError as e:
            return self._failure("send_turn_change", e, membership.room_id)
        logger.debug("turn change sent", room_id=room_id, player_index=next_player_index)
        return RoomResult.success(room_id)

    async def send_game_state(self, payload: str) -> RoomResult:
        """Publish an opaque game payload to the other member."""
        membership = self._membership
        try:
            room_id = self._require_membership()
            path = join_path(self._paths.game_state(room_id), GAME_DATA_KEY)
            await self._call(self._registry.write(path, payload))
        except RoomError as e:
            return self._failure("send_game_state", e, membership.room_id)
        return RoomResult.success(room_id)

    # --- leave / teardown ---

    async def leave_room(self) -> RoomResult:
        """Leave the current room. Idempotent; always succeeds locally.

        Subscriptions are torn down before the leave write so no callback fires
        for the client's own departure. Remote failures are logged; membership
        and the saved association are cleared regardless.
        """
        async with self._membership_lock:
            membership = self._membership
            if not membership.active:
                return RoomResult.success()
            room_id = membership.room_id
            try:
                self._lifecycle.detach(room_id)
                if membership.is_host:
                    await self._remove_room(room_id)
                else:
                    await self._release_slot(room_id, self._identity.identity or "")
            finally:
                self._exit(room_id)
            logger.info("room left", room_id=room_id, was_host=membership.is_host)
            return RoomResult.success(room_id)

    async def close(self) -> None:
        """Process teardown: leave the room and drop every subscription."""
        restoring = list(self._restore_tasks)
        for task in restoring:
            task.cancel()
        await asyncio.gather(*restoring, return_exceptions=True)
        await self.leave_room()
        self._lifecycle.detach_all()
        for subscription in self._event_subscriptions:
            subscription.dispose()

    # --- slot assignment ---

    async def _join(self, room_id: str, player_id: str, name: str) -> RoomRecord:
        """Claim slot 2 of ``room_id`` and attach its subscriptions.

        If the caller is cancelled, or attaching fails after a verified claim,
        the slot is released again so no half-joined state survives.
        """
        try:
            record = await self._claim_slot(room_id, player_id, name)
            await self._lifecycle.attach(room_id)
        except asyncio.CancelledError:
            logger.info("join cancelled, releasing slot", room_id=room_id)
            await asyncio.shield(self._release_slot(room_id, player_id))
            raise
        except RegistryError as e:
            await self._release_slot(room_id, player_id)
            raise RoomStoreUnavailableError(str(e)) from e
        return record

    async def _claim_slot(self, room_id: str, player_id: str, name: str) -> RoomRecord:
        """Pre-check, atomic mutate, verify; retried within the attempt budget."""
        path = self._paths.room(room_id)
        max_attempts = self._settings.join_max_attempts
        transport_error: RegistryError | None = None

        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                await asyncio.sleep(self._settings.join_retry_delay_seconds)
            try:
                record = RoomRecord.from_wire(await self._registry.read(path))
                if record is not None and record.player2_id == player_id:
                    # An earlier attempt committed but could not be verified.
                    return record
                _check_joinable(record, room_id)

                outcome = await self._registry.run_atomic(
                    path,
                    functools.partial(_claim_guest_slot, player_id, name),
                    max_reruns=self._settings.transaction_max_reruns,
                )
                verified = None
                if outcome.committed:
                    verified = RoomRecord.from_wire(await self._registry.read(path))
            except RegistryError as e:
                transport_error = e
                logger.warning("slot claim attempt failed on transport", room_id=room_id, attempt=attempt)
                continue

            transport_error = None
            if verified is not None and verified.player2_id == player_id:
                logger.debug("guest slot claimed", room_id=room_id, attempt=attempt)
                return verified
            logger.info(
                "slot claim attempt lost",
                room_id=room_id,
                attempt=attempt,
                committed=outcome.committed,
                reruns=outcome.reruns,
            )

        if transport_error is not None:
            raise RoomStoreUnavailableError(str(transport_error)) from transport_error
        raise ConflictExhaustedError(room_id, max_attempts)

    async def _auto_match(self, player_id: str, name: str) -> RoomRecord:
        for candidate in await self._open_rooms(exclude_host=player_id):
            try:
                return await self._join(candidate.room_id, player_id, name)
            except RoomError as e:
                logger.info("auto-match candidate skipped", room_id=candidate.room_id, reason=e.code)
        raise RoomNotFoundError("no open room to join")

    async def _open_rooms(self, exclude_host: str) -> list[RoomRecord]:
        listing = await self._call(self._registry.read(self._paths.root))
        if not isinstance(listing, dict):
            return []
        rooms = []
        for value in listing.values():
            record = RoomRecord.from_wire(value)
            if record is None or not record.is_open:
                continue
            if exclude_host and record.host_id == exclude_host:
                continue
            rooms.append(record)
        return rooms

    async def _release_slot(self, room_id: str, player_id: str) -> None:
        try:
            await self._registry.run_atomic(
                self._paths.room(room_id),
                functools.partial(_release_guest_slot, player_id),
                max_reruns=self._settings.transaction_max_reruns,
            )
        except RegistryError:
            logger.exception("failed to release guest slot", room_id=room_id)

    async def _remove_room(self, room_id: str) -> None:
        path = self._paths.room(room_id)
        try:
            await self._registry.remove(path)
            return
        except RegistryError:
            logger.warning("room removal failed, clearing fields one by one", room_id=room_id)
        try:
            for field in HOST_FALLBACK_FIELDS:
                await self._registry.remove(join_path(path, field))
        except RegistryError:
            logger.exception("room cleanup failed", room_id=room_id)

    # --- membership ---

    def _enter(self, membership: Membership, player_id: str, player1_name: str, player2_name: str) -> None:
        self._membership = membership
        bind_room_context(membership.room_id, player_id, membership.local_slot)
        try:
            self._associations.save(
                LocalAssociation(
                    room_id=membership.room_id,
                    player_id=player_id,
                    player_number=membership.local_slot,
                    player1_name=player1_name,
                    player2_name=player2_name,
                    online_mode=self._online_mode,
                ),
            )
        except OSError:
            logger.exception("failed to save room association", room_id=membership.room_id)

    def _exit(self, room_id: str, *, keep_association: bool = False) -> None:
        self._membership = NO_MEMBERSHIP
        if not keep_association:
            try:
                self._associations.clear()
            except OSError:
                logger.exception("failed to clear room association", room_id=room_id)
        clear_room_context()
        self._events.emit(RoomLeftEvent(room_id=room_id))

    def _on_room_removed(self, event: RoomRemovedEvent) -> None:
        if self._membership.room_id != event.room_id:
            return
        logger.info("room removed remotely, leaving", room_id=event.room_id)
        self._lifecycle.detach(event.room_id)
        self._exit(event.room_id)

    def _abandon_removed(self, operation: str, room_id: str) -> RoomResult:
        """Undo an entry whose room was removed while its subscriptions were being attached."""
        self._lifecycle.detach(room_id)
        self._exit(room_id)
        return self._failure(operation, RoomNotFoundError(f"room {room_id} was removed while entering it"), room_id)

    def _on_connection_lost(self, event: ConnectionLostEvent) -> None:
        if self._membership.room_id != event.room_id:
            return
        task = asyncio.create_task(self._restore_subscriptions(event.room_id))
        self._restore_tasks.add(task)
        task.add_done_callback(self._restore_tasks.discard)

    async def _restore_subscriptions(self, room_id: str) -> None:
        """Re-attach a room whose subscriptions the store dropped.

        If the store cannot be reached, membership ends locally but the saved
        association is kept so ``resume_room`` can pick the room up again.
        """
        async with self._membership_lock:
            if self._membership.room_id != room_id or self._lifecycle.is_attached(room_id):
                return
            try:
                await self._lifecycle.attach(room_id)
            except RegistryError:
                logger.exception("could not restore room subscriptions, leaving locally", room_id=room_id)
                self._exit(room_id, keep_association=True)
                return
        logger.info("room subscriptions restored", room_id=room_id)

    def _require_membership(self) -> str:
        if self._membership.room_id is None:
            raise NotInRoomError("not in a room")
        return self._membership.room_id

    # --- helpers ---

    async def _wait_identity(self) -> str:
        return await self._identity.wait(self._settings.auth_timeout_seconds)

    @staticmethod
    async def _call(awaitable: Any) -> Any:  # noqa: ANN401
        """Await a single registry call, surfacing transport failure as a room error."""
        try:
            return await awaitable
        except RegistryError as e:
            raise RoomStoreUnavailableError(str(e)) from e

    @staticmethod
    def _failure(operation: str, error: RoomError, room_id: str | None = None) -> RoomResult:
        logger.info("room operation failed", operation=operation, room_id=room_id, error=error.code)
        return RoomResult.failure(error, room_id)
