"""End-to-end room flow: create, join, contend, ready up, start, play turns, leave."""

from __future__ import annotations

import asyncio

from lobby.registry.memory import InMemoryRegistry
from lobby.rooms.events import RoomEventType
from lobby.rooms.exceptions import RoomErrorCode
from lobby.rooms.models import GUEST_SLOT, HOST_SLOT, NO_MEMBERSHIP, RoomStatus
from lobby.tests.mocks import settle


async def _sync(*clients) -> None:
    for _ in range(3):
        await settle()
        for client in clients:
            await client.session_state.drain()


class TestRoomFlow:
    async def test_full_session(self, make_client, registry):
        host = await make_client("host")
        guest = await make_client("guest")
        latecomer = await make_client("late")
        host_events = []
        for event_type in RoomEventType:
            host.events.subscribe(event_type, host_events.append)

        room_id = (await host.coordinator.create_room("Alice")).room_id
        assert (await guest.coordinator.join_room(room_id, "Bob")).ok
        assert (await latecomer.coordinator.join_room(room_id, "Carol")).error == RoomErrorCode.ROOM_FULL

        await host.coordinator.set_ready()
        await guest.coordinator.set_ready()
        await _sync(host, guest)
        assert host.session_state.status == RoomStatus.READY

        assert (await host.coordinator.start_game()).ok
        await _sync(host, guest)

        room = registry.peek(f"rooms/{room_id}")
        assert room["gameStarted"] is True
        assert room["gameState"]["currentTurn"] == HOST_SLOT
        assert guest.session_state.status == RoomStatus.STARTED
        assert guest.turns.state.current_player_index == HOST_SLOT

        await host.coordinator.send_game_state("opening move")
        await host.turns.end_turn()
        await _sync(host, guest)
        assert guest.turns.is_local_turn is True
        assert guest.session_state.game_state.data == "opening move"

        await guest.coordinator.leave_room()
        await _sync(host, guest)
        assert guest.coordinator.membership == NO_MEMBERSHIP
        assert registry.peek(f"rooms/{room_id}/player2Id") == ""

        await host.coordinator.leave_room()
        assert registry.peek(f"rooms/{room_id}") is None

        types = [event.type for event in host_events]
        assert RoomEventType.PLAYER_JOINED in types
        assert RoomEventType.GAME_STARTED in types
        assert RoomEventType.PLAYER_LEFT in types
        assert types[-1] == RoomEventType.ROOM_LEFT
        assert RoomEventType.ROOM_REMOVED not in types

    async def test_contended_join_under_latency(self, make_client):
        registry = InMemoryRegistry(latency=0.001)
        host = await make_client("host", store=registry)
        room_id = (await host.coordinator.create_room("Alice")).room_id
        contenders = [await make_client(f"player-{i}", store=registry) for i in range(8)]

        results = await asyncio.gather(*(c.coordinator.join_room(room_id, c.coordinator.player_id) for c in contenders))

        winners = [c for c, r in zip(contenders, results, strict=True) if r.ok]
        assert len(winners) == 1
        assert registry.peek(f"rooms/{room_id}/player2Id") == winners[0].coordinator.player_id
        assert registry.peek(f"rooms/{room_id}/player2Name") == winners[0].coordinator.player_id
        assert sum(len(c.lifecycle.attached_rooms) for c in contenders) == 1
        assert winners[0].coordinator.player_number == GUEST_SLOT

    async def test_auto_match_pairs_players(self, make_client):
        host = await make_client("host")
        room_id = (await host.coordinator.create_room("Alice")).room_id
        guest = await make_client("guest")

        result = await guest.coordinator.join_room()
        await _sync(host, guest)

        assert result.room_id == room_id
        assert host.session_state.room.player2_id == "guest"
        assert host.session_state.status == RoomStatus.FULL
