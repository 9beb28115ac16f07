"""Typed domain exceptions for room coordination.

Every expected failure of a room operation is a RoomError subclass carrying
a RoomErrorCode. They are raised inside the coordinator and converted to a
RoomResult at its public boundary, so callers never see them thrown.
"""

from enum import StrEnum


class RoomErrorCode(StrEnum):
    AUTHENTICATION_TIMEOUT = "authentication_timeout"
    ROOM_NOT_FOUND = "room_not_found"
    ROOM_FULL = "room_full"
    GAME_ALREADY_STARTED = "game_already_started"
    CONFLICT_EXHAUSTED = "conflict_exhausted"
    REGISTRY_UNAVAILABLE = "registry_unavailable"
    STALE_SUBSCRIPTION = "stale_subscription"
    ALREADY_IN_ROOM = "already_in_room"
    NOT_IN_ROOM = "not_in_room"
    NOT_HOST = "not_host"
    NOT_ALL_READY = "not_all_ready"
    INVALID_TURN = "invalid_turn"


class RoomError(Exception):
    """Base exception for room coordination failures."""

    code: RoomErrorCode

    def __init__(self, message: str = "") -> None:
        self.message = message or self.code.value.replace("_", " ")
        super().__init__(self.message)


class AuthenticationTimeoutError(RoomError):
    """The local identity was not established within the wait budget."""

    code = RoomErrorCode.AUTHENTICATION_TIMEOUT

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"identity not established within {timeout:g}s")


class RoomNotFoundError(RoomError):
    code = RoomErrorCode.ROOM_NOT_FOUND


class RoomFullError(RoomError):
    code = RoomErrorCode.ROOM_FULL


class GameAlreadyStartedError(RoomError):
    code = RoomErrorCode.GAME_ALREADY_STARTED


class ConflictExhaustedError(RoomError):
    """Slot assignment lost every attempt of its retry budget."""

    code = RoomErrorCode.CONFLICT_EXHAUSTED

    def __init__(self, room_id: str, attempts: int) -> None:
        self.room_id = room_id
        self.attempts = attempts
        super().__init__(f"could not claim a slot in room {room_id} after {attempts} attempts")


class StaleSubscriptionError(RoomError):
    """A change notification arrived for a room binding that is no longer current."""

    code = RoomErrorCode.STALE_SUBSCRIPTION


class AlreadyInRoomError(RoomError):
    code = RoomErrorCode.ALREADY_IN_ROOM


class NotInRoomError(RoomError):
    code = RoomErrorCode.NOT_IN_ROOM


class NotHostError(RoomError):
    code = RoomErrorCode.NOT_HOST


class NotAllReadyError(RoomError):
    code = RoomErrorCode.NOT_ALL_READY


class InvalidTurnError(RoomError):
    code = RoomErrorCode.INVALID_TURN


class RoomStoreUnavailableError(RoomError):
    """A registry call failed on transport while serving a room operation."""

    code = RoomErrorCode.REGISTRY_UNAVAILABLE
