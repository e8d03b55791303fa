"""Presence and message-routing engine.

``ChatEngine`` owns one instance of each component for the lifetime of the
process (built at startup, torn down at shutdown) and turns validated inbound
events into calls on them. Calls into the storage collaborator run in a
thread pool and never while an engine lock is held.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from chat.connections import (
    Connection, ConnectionHandle, ConnectionRegistry, DisconnectReason, RegistryEvent, RegistryEventKind,
)
from chat.errors import ChatError, ErrorCode, NotAnnounced, NotInRoom, UnknownIdentity
from chat.presence import PresenceDirectory
from chat.reaper import StaleSessionReaper
from chat.rooms import RoomManager, RoomSnapshot
from chat.router import MessageEnvelope, MessageRouter, DeliveryResult, PRIVATE
from chat.typing_tracker import Destination, TypingTracker
from constants import (
    AUTO_REGISTER_IDENTITIES, HEARTBEAT_IDLE_SECONDS, REAPER_INTERVAL_SECONDS, STALE_CONNECTION_SECONDS,
    TYPING_EXPIRY_SECONDS, WS_CLOSE_GOING_AWAY,
)
from logging_config import get_logger
from schemas.events import (
    AnnounceEvent, ConnectedEvent, ErrorEvent, HeartbeatReplyEvent, InboundEvent, JoinRoomEvent, LeaveRoomEvent,
    ListOnlineEvent, OnlineUsersEvent, PingEvent, PongEvent, RoomJoinedEvent, RoomLeftEvent, SendPrivateEvent, SendRoomEvent,
    TypingStartEvent, TypingStopEvent, parse_inbound,
)

logger = get_logger(__name__)


@dataclass
class EngineSettings:
    typing_expiry_seconds: float = TYPING_EXPIRY_SECONDS
    reaper_interval_seconds: float = REAPER_INTERVAL_SECONDS
    stale_connection_seconds: float = STALE_CONNECTION_SECONDS
    heartbeat_idle_seconds: float = HEARTBEAT_IDLE_SECONDS
    auto_register_identities: bool = AUTO_REGISTER_IDENTITIES


def _describe_validation_error(error: ValidationError) -> str:
    details = []
    for item in error.errors()[:3]:
        location = ".".join(str(part) for part in item.get("loc", ())) or "frame"
        details.append(f"{location}: {item.get('msg')}")
    return "Malformed event (" + "; ".join(details) + ")"


class ChatEngine:
    def __init__(self, backend, settings: Optional[EngineSettings] = None):
        self.backend = backend
        self.settings = settings or EngineSettings()
        self.registry = ConnectionRegistry()
        self.rooms = RoomManager(self.registry)
        self.typing = TypingTracker(self.registry, self.rooms, expiry_seconds=self.settings.typing_expiry_seconds)
        # Cleanup must run before the presence-offline broadcast, so it subscribes first
        self.registry.subscribe(self._on_registry_event)
        self.presence = PresenceDirectory(self.registry)
        self.router = MessageRouter(self.registry, self.rooms)
        self.reaper = StaleSessionReaper(
            self.registry,
            self.rooms,
            self.disconnect,
            interval_seconds=self.settings.reaper_interval_seconds,
            stale_after_seconds=self.settings.stale_connection_seconds,
            heartbeat_after_seconds=self.settings.heartbeat_idle_seconds,
        )

    async def start(self):
        self.reaper.start()
        logger.info("Chat engine started")

    async def shutdown(self):
        await self.reaper.stop()
        for connection in self.registry.connections():
            await self.disconnect(connection.handle, DisconnectReason.SHUTDOWN)
            await connection.close(code=WS_CLOSE_GOING_AWAY, reason="Server shutting down")
        await self.typing.close()
        logger.info("Chat engine stopped")

    async def handle_frame(self, handle: ConnectionHandle, frame: Union[str, bytes, dict]):
        """Validate and dispatch one inbound frame; every failure becomes an ``error`` event."""
        self.registry.touch(handle)
        try:
            event = parse_inbound(frame)
        except ValidationError as e:
            logger.debug(f"Rejected frame from connection {handle.connection_id}: {e}")
            await self._send_error(handle, ErrorCode.INVALID_PAYLOAD, _describe_validation_error(e))
            return

        try:
            await self.handle_event(handle, event)
        except ChatError as e:
            logger.debug(f"{event.type} from connection {handle.connection_id} failed: {e.code.value}")
            await self._send_error(handle, e.code, e.message)
        except Exception as e:
            logger.error(f"Error handling {event.type} from connection {handle.connection_id}: {e}", exc_info=True)
            await self._send_error(handle, ErrorCode.INTERNAL_ERROR, f"Failed to process {event.type}")

    async def handle_event(self, handle: ConnectionHandle, event: InboundEvent):
        if isinstance(event, PingEvent):
            await handle.send(PongEvent(timestamp=datetime.now().isoformat()))
            return
        if isinstance(event, HeartbeatReplyEvent):
            # handle_frame already refreshed last_seen
            return
        if isinstance(event, AnnounceEvent):
            await self.announce(handle, event.identity_id)
            return

        connection = self.registry.lookup_by_connection(handle)
        if connection is None:
            raise NotAnnounced("Send 'announce' before any other event")

        if isinstance(event, JoinRoomEvent):
            await self.join_room(connection, event.room_id, event.room_display_name)
        elif isinstance(event, LeaveRoomEvent):
            await self.leave_room(connection)
        elif isinstance(event, SendPrivateEvent):
            await self.send_private(connection, event.to_identity_id, event.body)
        elif isinstance(event, SendRoomEvent):
            await self.send_room(connection, event.body)
        elif isinstance(event, TypingStartEvent):
            await self.typing.start_typing(connection, Destination(event.destination_kind, event.destination))
        elif isinstance(event, TypingStopEvent):
            await self.typing.stop_typing(connection, Destination(event.destination_kind, event.destination))
        elif isinstance(event, ListOnlineEvent):
            await connection.send(OnlineUsersEvent(users=self.presence.list_online(excluding=connection.identity_id)))

    async def announce(self, handle: ConnectionHandle, identity_id: str) -> Connection:
        existing = self.registry.lookup_by_connection(handle)
        if existing is None or existing.identity_id != identity_id:
            identity = await run_in_threadpool(self.backend.resolve_identity, identity_id)
            if identity is None and self.settings.auto_register_identities:
                identity = await run_in_threadpool(self.backend.register_identity, identity_id, identity_id)
            if identity is None:
                raise UnknownIdentity(f"Unknown identity '{identity_id}'")
        else:
            identity = existing.identity

        connection = await self.registry.announce(handle, identity)
        await connection.send(ConnectedEvent(
            connection_id=connection.connection_id,
            identity_id=connection.identity_id,
            display_name=connection.display_name,
            online_users=self.presence.list_online(excluding=connection.identity_id),
        ))
        return connection

    async def disconnect(
        self,
        handle: Union[ConnectionHandle, str],
        reason: DisconnectReason = DisconnectReason.CLIENT_DISCONNECT,
    ) -> Optional[Connection]:
        """Idempotent; cleanup cascades from the registry's identity-offline event."""
        return await self.registry.remove(handle, reason)

    async def join_room(self, connection: Connection, room_id: str, display_name: Optional[str] = None) -> RoomSnapshot:
        previous = self.rooms.room_of(connection.connection_id)
        if previous is not None and previous != room_id:
            await self.typing.clear_room(connection, previous)
        snapshot = await self.rooms.join(connection, room_id, display_name)
        await connection.send(RoomJoinedEvent(
            room_id=snapshot.room_id,
            display_name=snapshot.display_name,
            members=snapshot.members,
        ))
        return snapshot

    async def leave_room(self, connection: Connection) -> str:
        room_id = self.rooms.room_of(connection.connection_id)
        if room_id is None:
            raise NotInRoom("Not in a room")
        await self.typing.clear_room(connection, room_id)
        await self.rooms.leave(connection)
        await connection.send(RoomLeftEvent(room_id=room_id))
        return room_id

    async def send_private(self, connection: Connection, to_identity: str, body: str) -> DeliveryResult:
        if self.registry.lookup(to_identity) is None:
            recipient = await run_in_threadpool(self.backend.resolve_identity, to_identity)
            if recipient is None:
                raise UnknownIdentity(f"Unknown identity '{to_identity}'")
        result = await self.router.send_private(connection, to_identity, body)
        # Offline recipients rely on the stored copy
        await self._persist(result.envelope, delivered=result.delivered)
        return result

    async def send_room(self, connection: Connection, body: str) -> DeliveryResult:
        result = await self.router.send_room(connection, body)
        if result.delivered:
            await self._persist(result.envelope)
        return result

    async def _persist(self, envelope: MessageEnvelope, delivered: Optional[bool] = None):
        try:
            await run_in_threadpool(self.backend.append_message, envelope.to_record(delivered))
        except Exception as e:
            kind = "private" if envelope.kind == PRIVATE else f"room {envelope.room_id}"
            logger.error(f"Failed to persist {kind} message {envelope.message_id}: {e}", exc_info=True)

    async def _on_registry_event(self, event: RegistryEvent):
        if event.kind is not RegistryEventKind.OFFLINE:
            return
        connection = event.connection
        await self.typing.clear_connection(connection)
        room_id = await self.rooms.leave(connection)
        if room_id is not None:
            logger.debug(f"Removed {connection.identity_id} from room {room_id} after {event.reason.value}")

    async def _send_error(self, handle: ConnectionHandle, code: ErrorCode, message: str):
        try:
            await handle.send(ErrorEvent(code=code.value, message=message))
        except Exception as e:
            logger.warning(f"Could not deliver error {code.value} to connection {handle.connection_id}: {e}")
