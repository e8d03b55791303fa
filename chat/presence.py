from typing import List, Optional

from chat.connections import Connection, ConnectionRegistry, RegistryEvent, RegistryEventKind
from logging_config import get_logger
from schemas.events import PresenceEvent
from schemas.users import Identity

logger = get_logger(__name__)


class PresenceDirectory:
    """Online/offline view derived from the Connection Registry.

    Nothing is cached here: the online list is read from the registry on every
    call, so it can never disagree with it.
    """

    def __init__(self, registry: ConnectionRegistry):
        self._registry = registry
        registry.subscribe(self._on_registry_event)

    def list_online(self, excluding: Optional[str] = None) -> List[Identity]:
        identities = [c.identity for c in self._registry.connections() if c.identity_id != excluding]
        return sorted(identities, key=lambda identity: (identity.display_name.lower(), identity.id))

    def is_online(self, identity_id: str) -> bool:
        return self._registry.lookup(identity_id) is not None

    async def broadcast_online(self, connection: Connection) -> int:
        return await self._broadcast("presence-online", connection)

    async def broadcast_offline(self, connection: Connection) -> int:
        return await self._broadcast("presence-offline", connection)

    async def _broadcast(self, event_type: str, subject: Connection) -> int:
        event = PresenceEvent(type=event_type, identity_id=subject.identity_id, display_name=subject.display_name)
        delivered = 0
        for connection in self._registry.connections():
            if connection is subject:
                continue
            if await connection.send(event):
                delivered += 1
        logger.debug(f"Broadcasted {event_type} for {subject.identity_id} to {delivered} connections")
        return delivered

    async def _on_registry_event(self, event: RegistryEvent):
        if event.kind is RegistryEventKind.ONLINE:
            await self.broadcast_online(event.connection)
        else:
            await self.broadcast_offline(event.connection)
