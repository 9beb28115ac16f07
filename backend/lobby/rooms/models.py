"""Room models shared by the coordinator, session state and turn synchronizer."""

from __future__ import annotations

import secrets
import string
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field

from lobby.registry.types import SERVER_TIMESTAMP, join_path
from lobby.rooms.exceptions import RoomError, RoomErrorCode

ROOM_ID_ALPHABET = string.ascii_uppercase + string.digits
ROOM_ID_LENGTH = 6

DEFAULT_HOST_NAME = "Host"
DEFAULT_PLAYER1_NAME = "Player 1"
DEFAULT_PLAYER2_NAME = "Player 2"

HOST_SLOT = 1
GUEST_SLOT = 2

GAME_STATE_KEY = "gameState"
CURRENT_TURN_KEY = "currentTurn"

# Written on guest leave: clears the guest's fields, keeps the room alive.
GUEST_CLEARED_FIELDS: dict[str, Any] = {"player2Id": "", "player2Name": "", "player2Ready": False}

# Fields removed one by one when removing the whole room record failed.
HOST_FALLBACK_FIELDS = ("roomId", "hostId", "player1Id", "player2Id", "gameStarted")


def generate_room_id() -> str:
    """Return a fresh 6-character room id from A-Z0-9."""
    return "".join(secrets.choice(ROOM_ID_ALPHABET) for _ in range(ROOM_ID_LENGTH))


def ready_field(slot: int) -> str:
    return "player1Ready" if slot == HOST_SLOT else "player2Ready"


class RoomStatus(StrEnum):
    WAITING_FOR_SLOT2 = "waiting_for_slot2"
    FULL = "full"
    READY = "ready"
    STARTED = "started"
    REMOVED = "removed"


class RoomRecord(BaseModel):
    """One two-player room as stored in the registry.

    Field aliases are the wire contract with the store and must round-trip
    exactly. An empty ``player2_id`` means the guest slot is open. Fields the
    store dropped (empty values) decode to their defaults.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    room_id: str = Field(default="", alias="roomId")
    host_id: str = Field(default="", alias="hostId")
    host_name: str = Field(default=DEFAULT_HOST_NAME, alias="hostName")
    player1_id: str = Field(default="", alias="player1Id")
    player1_name: str = Field(default=DEFAULT_PLAYER1_NAME, alias="player1Name")
    player2_id: str = Field(default="", alias="player2Id")
    player2_name: str = Field(default="", alias="player2Name")
    player1_ready: bool = Field(default=False, alias="player1Ready")
    player2_ready: bool = Field(default=False, alias="player2Ready")
    game_started: bool = Field(default=False, alias="gameStarted")
    created_at: int | dict[str, str] | None = Field(default=None, alias="createdAt")

    @classmethod
    def for_host(cls, room_id: str, host_id: str, host_name: str) -> Self:
        """New room with the host in slot 1, the guest slot open and a server-side creation time."""
        name = host_name or DEFAULT_HOST_NAME
        return cls(
            room_id=room_id,
            host_id=host_id,
            host_name=name,
            player1_id=host_id,
            player1_name=name,
            created_at=SERVER_TIMESTAMP,
        )

    @classmethod
    def from_wire(cls, value: Any) -> Self | None:  # noqa: ANN401
        """Decode a stored value.

        Returns None when the record is absent, not a mapping, or has lost its
        roomId (the leftover of a field-by-field removal after a failed delete).
        """
        if not isinstance(value, dict):
            return None
        record = cls.model_validate(value)
        return record if record.room_id else None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)

    @property
    def has_guest(self) -> bool:
        return bool(self.player2_id)

    @property
    def both_ready(self) -> bool:
        return self.has_guest and self.player1_ready and self.player2_ready

    @property
    def is_open(self) -> bool:
        """Candidate for a join: not started, guest slot empty."""
        return not self.game_started and not self.has_guest

    @property
    def status(self) -> RoomStatus:
        if self.game_started:
            return RoomStatus.STARTED
        if not self.has_guest:
            return RoomStatus.WAITING_FOR_SLOT2
        if self.both_ready:
            return RoomStatus.READY
        return RoomStatus.FULL

    def slot_of(self, identity: str) -> int | None:
        if identity and identity == self.player1_id:
            return HOST_SLOT
        if identity and identity == self.player2_id:
            return GUEST_SLOT
        return None


class GameStateRecord(BaseModel):
    """The ``gameState`` child of a room: turn hand-off and opaque game payload."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    current_turn: int | None = Field(default=None, alias=CURRENT_TURN_KEY)
    turn_time_remaining: float | None = Field(default=None, alias="turnTimeRemaining")
    server_time: int | None = Field(default=None, alias="serverTime")
    data: str = ""

    @classmethod
    def from_wire(cls, value: Any) -> Self | None:  # noqa: ANN401
        if not isinstance(value, dict):
            return None
        return cls.model_validate(value)


@dataclass(frozen=True)
class Membership:
    """The local client's association with a room.

    ``room_id`` is set iff a create/join/resume completed and no leave has
    happened since; ``local_slot`` is only ever set alongside it.
    """

    room_id: str | None = None
    local_slot: int | None = None
    is_host: bool = False

    @property
    def active(self) -> bool:
        return self.room_id is not None

    @classmethod
    def host(cls, room_id: str) -> Membership:
        return cls(room_id=room_id, local_slot=HOST_SLOT, is_host=True)

    @classmethod
    def guest(cls, room_id: str) -> Membership:
        return cls(room_id=room_id, local_slot=GUEST_SLOT, is_host=False)


NO_MEMBERSHIP = Membership()


@dataclass(frozen=True)
class RoomPaths:
    """Registry paths for rooms under a configurable root."""

    root: str = "rooms"

    def room(self, room_id: str) -> str:
        return join_path(self.root, room_id)

    def game_state(self, room_id: str) -> str:
        return join_path(self.root, room_id, GAME_STATE_KEY)


class RoomResult(BaseModel, frozen=True):
    """Outcome of a public room operation. Failures carry a code, never an exception."""

    room_id: str | None = None
    error: RoomErrorCode | None = None
    message: str = ""
    rooms: tuple[RoomRecord, ...] = ()

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, room_id: str | None = None, rooms: tuple[RoomRecord, ...] = ()) -> RoomResult:
        return cls(room_id=room_id, rooms=rooms)

    @classmethod
    def failure(cls, error: RoomError, room_id: str | None = None) -> RoomResult:
        return cls(room_id=room_id, error=error.code, message=error.message)
