"""Shared fixtures for lobby tests."""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable

import pytest

from lobby.app import LobbyClient
from lobby.identity.provider import StaticIdentityProvider
from lobby.registry.memory import InMemoryRegistry
from lobby.registry.protocol import RegistryProtocol
from lobby.settings import RoomSettings
from shared.storage import MemoryAssociationStore

ClientFactory = Callable[..., Awaitable[LobbyClient]]


@pytest.fixture
def settings() -> RoomSettings:
    """Settings from the test environment, with a slow sync so timers never fire by accident."""
    return RoomSettings(turn_duration_seconds=60, turn_sync_interval_seconds=60)


@pytest.fixture
def registry() -> InMemoryRegistry:
    return InMemoryRegistry()


@pytest.fixture
async def make_client(registry: InMemoryRegistry, settings: RoomSettings) -> AsyncIterator[ClientFactory]:
    """Build started clients that share one registry; all are closed after the test."""
    clients: list[LobbyClient] = []

    async def _make(
        player_id: str,
        *,
        store: RegistryProtocol | None = None,
        room_settings: RoomSettings | None = None,
    ) -> LobbyClient:
        client = LobbyClient(
            room_settings or settings,
            store or registry,
            StaticIdentityProvider(player_id),
            MemoryAssociationStore(),
            owns_registry=False,
        )
        await client.start()
        clients.append(client)
        return client

    yield _make

    for client in clients:
        await client.aclose()
