"""Connection Registry: which identity is reachable, and through which live connection.

The registry is the single writer-of-record for reachability. Presence and
room membership are derived from it and are kept consistent through the
domain events it emits on every create, replace and destroy.
"""
import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Union

from chat.errors import InvalidPayload
from constants import WS_CLOSE_SUPERSEDED
from logging_config import get_logger
from schemas.events import OutboundEvent
from schemas.users import Identity

logger = get_logger(__name__)


class ConnectionHandle(Protocol):
    """Transport seen by the engine. ``send`` must not block on the network."""

    connection_id: str

    @property
    def closed(self) -> bool: ...

    async def send(self, event: OutboundEvent) -> None: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...


class DisconnectReason(str, Enum):
    CLIENT_DISCONNECT = "client-disconnect"
    SUPERSEDED = "duplicate-connection-superseded"
    TRANSPORT_FAILURE = "transport-failure"
    SHUTDOWN = "shutdown"


@dataclass(eq=False)
class Connection:
    handle: ConnectionHandle
    identity: Identity
    joined_at: datetime = field(default_factory=datetime.now)
    last_seen: float = field(default_factory=time.monotonic)
    current_room_id: Optional[str] = None
    superseded: bool = False

    @property
    def connection_id(self) -> str:
        return self.handle.connection_id

    @property
    def identity_id(self) -> str:
        return self.identity.id

    @property
    def display_name(self) -> str:
        return self.identity.display_name

    async def send(self, event: OutboundEvent) -> bool:
        """Push one event; a failed push is logged and reported, never raised."""
        try:
            await self.handle.send(event)
            return True
        except Exception as e:
            logger.warning(f"Failed to send {event.type} to connection {self.connection_id} ({self.identity_id}): {e}")
            return False

    async def close(self, code: int = 1000, reason: str = ""):
        try:
            await self.handle.close(code=code, reason=reason)
        except Exception as e:
            logger.debug(f"Error closing connection {self.connection_id}: {e}")


class RegistryEventKind(str, Enum):
    ONLINE = "identity-online"
    OFFLINE = "identity-offline"


@dataclass(frozen=True)
class RegistryEvent:
    kind: RegistryEventKind
    connection: Connection
    reason: Optional[DisconnectReason] = None


RegistryListener = Callable[[RegistryEvent], Awaitable[None]]


def _connection_id(handle: Union[ConnectionHandle, str]) -> str:
    return handle if isinstance(handle, str) else handle.connection_id


class ConnectionRegistry:
    """Maps live connections to identities, at most one connection per identity.

    Mutations run under one lock. Listeners are awaited in subscription order
    while that lock is held, so the events for one identity are totally
    ordered. Listeners must only use the lock-free accessors
    (``lookup``, ``lookup_by_connection``, ``connections``).
    """

    def __init__(self):
        self._by_identity: Dict[str, Connection] = {}
        self._by_connection: Dict[str, Connection] = {}
        self._listeners: List[RegistryListener] = []
        self._lock = asyncio.Lock()

    def subscribe(self, listener: RegistryListener):
        self._listeners.append(listener)

    async def announce(self, handle: ConnectionHandle, identity: Identity) -> Connection:
        """Register ``handle`` for ``identity``; last writer wins."""
        async with self._lock:
            existing = self._by_connection.get(handle.connection_id)
            if existing is not None:
                if existing.identity_id == identity.id:
                    logger.debug(f"Connection {handle.connection_id} re-announced as {identity.id}")
                    return existing
                raise InvalidPayload(f"Connection is already announced as '{existing.identity_id}'")

            connection = Connection(handle=handle, identity=identity)

            previous = self._by_identity.get(identity.id)
            if previous is not None:
                logger.info(
                    f"Identity {identity.id} re-announced: connection {previous.connection_id} "
                    f"superseded by {connection.connection_id}"
                )
                previous.superseded = True
                self._drop(previous)
                await self._emit(RegistryEvent(RegistryEventKind.OFFLINE, previous, DisconnectReason.SUPERSEDED))
                await previous.close(code=WS_CLOSE_SUPERSEDED, reason="Superseded by a newer connection")

            self._by_identity[identity.id] = connection
            self._by_connection[connection.connection_id] = connection
            logger.info(f"Identity {identity.id} online on connection {connection.connection_id} (online: {len(self._by_identity)})")
            await self._emit(RegistryEvent(RegistryEventKind.ONLINE, connection))
            return connection

    async def remove(
        self,
        handle: Union[ConnectionHandle, str],
        reason: DisconnectReason = DisconnectReason.CLIENT_DISCONNECT,
    ) -> Optional[Connection]:
        """Deregister a connection. Returns ``None`` if it was already gone."""
        connection_id = _connection_id(handle)
        async with self._lock:
            connection = self._by_connection.get(connection_id)
            if connection is None:
                logger.debug(f"Connection {connection_id} already removed")
                return None
            self._drop(connection)
            logger.info(f"Identity {connection.identity_id} offline, connection {connection_id} removed ({reason.value})")
            await self._emit(RegistryEvent(RegistryEventKind.OFFLINE, connection, reason))
            return connection

    def touch(self, handle: Union[ConnectionHandle, str]):
        connection = self._by_connection.get(_connection_id(handle))
        if connection is not None:
            connection.last_seen = time.monotonic()

    def lookup(self, identity_id: str) -> Optional[Connection]:
        return self._by_identity.get(identity_id)

    def lookup_by_connection(self, handle: Union[ConnectionHandle, str]) -> Optional[Connection]:
        return self._by_connection.get(_connection_id(handle))

    def connections(self) -> List[Connection]:
        return list(self._by_connection.values())

    def __len__(self) -> int:
        return len(self._by_connection)

    def _drop(self, connection: Connection):
        self._by_connection.pop(connection.connection_id, None)
        # A superseded connection must never evict its replacement
        if self._by_identity.get(connection.identity_id) is connection:
            del self._by_identity[connection.identity_id]

    async def _emit(self, event: RegistryEvent):
        for listener in list(self._listeners):
            try:
                await listener(event)
            except Exception as e:
                logger.error(
                    f"Registry listener failed on {event.kind.value} for {event.connection.identity_id}: {e}",
                    exc_info=True,
                )
