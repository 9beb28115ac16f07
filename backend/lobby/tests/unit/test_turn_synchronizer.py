"""Tests for TurnSynchronizer across a host and a guest sharing one registry."""

from __future__ import annotations

import asyncio

import pytest

from lobby.rooms.events import RoomEventType, TurnChangedEvent
from lobby.rooms.exceptions import RoomErrorCode
from lobby.rooms.models import GUEST_SLOT, HOST_SLOT
from lobby.settings import RoomSettings
from lobby.tests.mocks import settle
from lobby.turns.synchronizer import SERVER_TIME_KEY, TURN_TIME_REMAINING_KEY, next_player


async def _sync(*clients) -> None:
    for _ in range(3):
        await settle()
        for client in clients:
            await client.session_state.drain()


async def _started_game(make_client, host_settings=None, guest_settings=None):
    host = await make_client("host", room_settings=host_settings)
    guest = await make_client("guest", room_settings=guest_settings)
    room_id = (await host.coordinator.create_room("Alice")).room_id
    await guest.coordinator.join_room(room_id, "Bob")
    await host.coordinator.set_ready()
    await guest.coordinator.set_ready()
    assert (await host.coordinator.start_game()).ok
    await _sync(host, guest)
    return host, guest, room_id


def _fast_turns(duration: float) -> RoomSettings:
    return RoomSettings(join_retry_delay_seconds=0.01, turn_duration_seconds=duration, turn_sync_interval_seconds=60)


class TestNextPlayer:
    def test_alternates(self):
        assert next_player(HOST_SLOT) == GUEST_SLOT
        assert next_player(GUEST_SLOT) == HOST_SLOT


class TestGameStart:
    async def test_both_members_start_on_host_turn(self, make_client):
        host, guest, _room_id = await _started_game(make_client)

        assert host.turns.active and guest.turns.active
        assert host.turns.state.current_player_index == HOST_SLOT
        assert guest.turns.state.current_player_index == HOST_SLOT
        assert host.turns.is_local_turn is True
        assert guest.turns.is_local_turn is False
        assert host.turns.is_authoritative is True
        assert guest.turns.is_authoritative is False
        assert 0 < host.turns.remaining <= 60

    async def test_inactive_before_start(self, make_client):
        client = await make_client("solo")

        assert client.turns.active is False
        assert (await client.turns.end_turn()).error == RoomErrorCode.NOT_IN_ROOM


class TestEndTurn:
    async def test_host_hands_turn_to_guest(self, make_client, registry):
        host, guest, room_id = await _started_game(make_client)

        result = await host.turns.end_turn()
        await _sync(host, guest)

        assert result.ok
        assert registry.peek(f"rooms/{room_id}/gameState/currentTurn") == GUEST_SLOT
        assert host.turns.state.current_player_index == GUEST_SLOT
        assert guest.turns.state.current_player_index == GUEST_SLOT
        assert guest.turns.is_local_turn is True

    async def test_turns_alternate(self, make_client, registry):
        host, guest, room_id = await _started_game(make_client)

        await host.turns.end_turn()
        await _sync(host, guest)
        await guest.turns.end_turn()
        await _sync(host, guest)

        assert registry.peek(f"rooms/{room_id}/gameState/currentTurn") == HOST_SLOT
        assert host.turns.is_local_turn is True

    async def test_waiting_player_cannot_end_turn(self, make_client, registry):
        _host, guest, room_id = await _started_game(make_client)

        result = await guest.turns.end_turn()

        assert result.error == RoomErrorCode.INVALID_TURN
        assert registry.peek(f"rooms/{room_id}/gameState/currentTurn") == HOST_SLOT


class TestRemoteTurnChange:
    async def test_remote_value_wins(self, make_client, registry):
        host, guest, room_id = await _started_game(make_client)

        await registry.write(f"rooms/{room_id}/gameState/currentTurn", GUEST_SLOT)
        await _sync(host, guest)

        assert host.turns.state.current_player_index == GUEST_SLOT
        assert guest.turns.state.current_player_index == GUEST_SLOT

    async def test_remote_change_restarts_countdown(self, make_client, registry):
        host, guest, room_id = await _started_game(make_client)
        deadline = guest.turns.state.turn_deadline
        await asyncio.sleep(0.01)

        await registry.write(f"rooms/{room_id}/gameState/currentTurn", GUEST_SLOT)
        await _sync(host, guest)

        assert guest.turns.state.turn_deadline > deadline

    @pytest.mark.parametrize("index", [0, 3])
    async def test_out_of_range_index_ignored(self, make_client, index):
        host, _guest, room_id = await _started_game(make_client)

        host.events.emit(TurnChangedEvent(room_id=room_id, player_index=index))

        assert host.turns.state.current_player_index == HOST_SLOT

    async def test_other_room_ignored(self, make_client):
        host, _guest, _room_id = await _started_game(make_client)

        host.events.emit(TurnChangedEvent(room_id="OTHER1", player_index=GUEST_SLOT))

        assert host.turns.state.current_player_index == HOST_SLOT


class TestTimeout:
    async def test_host_timeout_advances_turn(self, make_client):
        host, guest, _room_id = await _started_game(make_client, host_settings=_fast_turns(0.05))
        handed_over = asyncio.Event()

        def on_turn(event):
            if event.player_index == GUEST_SLOT:
                handed_over.set()

        guest.events.subscribe(RoomEventType.TURN_CHANGED, on_turn)

        await asyncio.wait_for(handed_over.wait(), timeout=2.0)
        await _sync(host, guest)
        assert guest.turns.state.current_player_index in (HOST_SLOT, GUEST_SLOT)

    async def test_guest_timeout_waits_for_host(self, make_client, registry):
        host, guest, room_id = await _started_game(make_client, guest_settings=_fast_turns(0.03))

        await asyncio.sleep(0.1)
        await _sync(host, guest)

        assert registry.peek(f"rooms/{room_id}/gameState/currentTurn") == HOST_SLOT
        assert guest.turns.state.current_player_index == HOST_SLOT
        assert guest.turns.remaining == 0.0


class TestPeriodicSync:
    async def test_host_pushes_remaining_time(self, make_client, registry):
        host, _guest, room_id = await _started_game(make_client)

        await host.turns.sync_once()

        game_state = registry.peek(f"rooms/{room_id}/gameState")
        assert 0 < game_state[TURN_TIME_REMAINING_KEY] <= 60
        assert isinstance(game_state[SERVER_TIME_KEY], int)
        assert game_state["currentTurn"] == HOST_SLOT

    async def test_guest_adopts_host_remaining_time(self, make_client, registry):
        _host, guest, room_id = await _started_game(make_client)
        await registry.write(f"rooms/{room_id}/gameState/{TURN_TIME_REMAINING_KEY}", 12.5)

        await guest.turns.sync_once()

        assert guest.turns.state.authoritative_remaining == 12.5
        assert 12.0 < guest.turns.remaining <= 12.5

    async def test_guest_ignores_missing_remaining_time(self, make_client):
        _host, guest, _room_id = await _started_game(make_client)

        await guest.turns.sync_once()

        assert guest.turns.remaining > 50

    async def test_sync_failure_is_logged_not_raised(self, make_client, registry):
        host, _guest, _room_id = await _started_game(make_client)
        registry.set_available(False)

        await host.turns.sync_once()

        assert host.turns.active
        registry.set_available(True)

    async def test_sync_loop_runs_on_interval(self, make_client, registry):
        fast_sync = RoomSettings(join_retry_delay_seconds=0.01, turn_duration_seconds=60, turn_sync_interval_seconds=0.02)
        _host, _guest, room_id = await _started_game(make_client, host_settings=fast_sync)

        await asyncio.sleep(0.1)

        assert registry.peek(f"rooms/{room_id}/gameState/{TURN_TIME_REMAINING_KEY}") is not None


class TestStop:
    async def test_leaving_stops_turn_tracking(self, make_client):
        host, guest, _room_id = await _started_game(make_client)

        await guest.coordinator.leave_room()

        assert guest.turns.active is False
        assert guest.turns.remaining == 0.0
        assert host.turns.active is True

    async def test_host_leave_stops_both(self, make_client):
        host, guest, _room_id = await _started_game(make_client)

        await host.coordinator.leave_room()
        await _sync(host, guest)

        assert host.turns.active is False
        assert guest.turns.active is False

    async def test_aclose_is_idempotent(self, make_client):
        host, _guest, _room_id = await _started_game(make_client)

        await host.turns.aclose()
        await host.turns.aclose()

        assert host.turns.active is False
