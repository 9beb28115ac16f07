"""Application root: builds and owns every room service for one local client."""

from __future__ import annotations

from typing import TYPE_CHECKING, Self

import structlog

from lobby.identity.provider import AnonymousAuthProvider, StaticIdentityProvider
from lobby.registry.firebase import FirebaseRestRegistry
from lobby.registry.memory import InMemoryRegistry
from lobby.rooms.connections import ConnectionLifecycleManager
from lobby.rooms.events import EventBus
from lobby.rooms.manager import RoomCoordinator
from lobby.rooms.models import RoomPaths
from lobby.rooms.session_state import SessionState
from lobby.settings import RoomSettings
from lobby.turns.synchronizer import TurnSynchronizer
from shared.logging import setup_logging
from shared.storage import FileAssociationStore, MemoryAssociationStore

if TYPE_CHECKING:
    from types import TracebackType

    from lobby.identity.provider import IdentityProvider
    from lobby.registry.protocol import RegistryProtocol
    from shared.storage import AssociationStore

logger = structlog.get_logger()


class LobbyClient:
    """
    Explicitly constructed owner of the room services.

    Consumers receive the client (or one of its services) by reference;
    there are no module-level instances. ``start`` begins identity
    establishment, ``aclose`` leaves the current room and releases every
    background task and network resource.
    """

    def __init__(
        self,
        settings: RoomSettings,
        registry: RegistryProtocol,
        identity: IdentityProvider,
        associations: AssociationStore,
        *,
        online_mode: bool = True,
        owns_registry: bool = True,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.identity = identity
        self.associations = associations
        self.events = EventBus()
        self.session_state = SessionState(self.events)
        self.lifecycle = ConnectionLifecycleManager(
            registry,
            self.session_state,
            RoomPaths(settings.rooms_root),
            self.events,
        )
        self.coordinator = RoomCoordinator(
            registry,
            identity,
            self.lifecycle,
            self.session_state,
            self.events,
            associations,
            settings,
            online_mode=online_mode,
        )
        self.turns = TurnSynchronizer(registry, self.coordinator, self.session_state, self.events, settings)
        self._owns_registry = owns_registry
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        await self.identity.start()
        logger.info("lobby client started", online_mode=self.coordinator.is_online_mode)

    async def aclose(self) -> None:
        try:
            await self.coordinator.close()
        finally:
            await self.turns.aclose()
            await self.session_state.stop()
            if self._owns_registry:
                await self.registry.aclose()
            await self.identity.aclose()
            self._started = False
            logger.info("lobby client closed")

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()


def create_client(
    settings: RoomSettings | None = None,
    *,
    registry: RegistryProtocol | None = None,
    player_id: str | None = None,
    configure_logging: bool = True,
) -> LobbyClient:
    """Build a client from settings.

    With ``database_url`` configured the client talks to the hosted store and
    signs in anonymously; otherwise it runs on an in-process registry with a
    fixed identity. ``registry`` lets several local clients share one store.
    """
    if settings is None:
        settings = RoomSettings()
    if configure_logging:
        setup_logging(log_dir=settings.log_dir)

    associations: AssociationStore
    if settings.association_path is not None:
        associations = FileAssociationStore(settings.association_path)
    else:
        associations = MemoryAssociationStore()

    owns_registry = registry is None
    if settings.database_url is not None:
        identity = AnonymousAuthProvider(settings.api_key or "", timeout=settings.request_timeout_seconds)
        if registry is None:
            registry = FirebaseRestRegistry(
                settings.database_url,
                token_provider=lambda: identity.id_token,
                timeout=settings.request_timeout_seconds,
            )
        return LobbyClient(settings, registry, identity, associations, online_mode=True, owns_registry=owns_registry)

    return LobbyClient(
        settings,
        registry or InMemoryRegistry(),
        StaticIdentityProvider(player_id or "local-player"),
        associations,
        online_mode=False,
        owns_registry=owns_registry,
    )
