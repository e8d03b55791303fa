"""Room Manager: explicit membership sets and the per-room fan-out routine.

Lock order is registry -> room table -> room. The table lock serializes
membership changes; each room's own lock serializes everything that is
delivered to that room, so members observe one total order per room.
"""
import asyncio
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set

from chat.connections import Connection, ConnectionRegistry
from chat.errors import NotAMember, RoomNotFound
from logging_config import get_logger
from schemas.events import MemberEvent, OutboundEvent
from schemas.rooms import RoomMember

logger = get_logger(__name__)


@dataclass(eq=False)
class Room:
    room_id: str
    display_name: str
    members: Set[str] = field(default_factory=set)
    created_at: datetime = field(default_factory=datetime.now)
    last_activity_at: datetime = field(default_factory=datetime.now)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)


@dataclass(frozen=True)
class RoomSnapshot:
    room_id: str
    display_name: str
    members: List[RoomMember]
    created_at: datetime
    last_activity_at: datetime


class RoomManager:
    def __init__(self, registry: ConnectionRegistry):
        self._registry = registry
        self._rooms: Dict[str, Room] = {}
        self._room_of: Dict[str, str] = {}  # connection_id -> room_id
        self._lock = asyncio.Lock()

    async def join(self, connection: Connection, room_id: str, display_name: Optional[str] = None) -> RoomSnapshot:
        """Move ``connection`` into ``room_id``, leaving its previous room in the same step.

        Returns the room's members excluding the joiner.
        """
        connection_id = connection.connection_id
        async with self._lock:
            current_id = self._room_of.get(connection_id)
            if current_id == room_id and room_id in self._rooms:
                room = self._rooms[room_id]
                async with room.lock:
                    room.last_activity_at = datetime.now()
                    logger.debug(f"Connection {connection_id} re-joined room {room_id}, no membership change")
                    return self._snapshot(room, exclude=connection_id)

            old_room = self._rooms.get(current_id) if current_id else None
            room = self._rooms.get(room_id)
            if room is None:
                room = Room(room_id=room_id, display_name=display_name or room_id)
                self._rooms[room_id] = room
                logger.info(f"Room {room_id} created ({room.display_name})")

            async with self._locked(old_room, room):
                if old_room is not None:
                    await self._remove_member_locked(old_room, connection)
                room.members.add(connection_id)
                self._room_of[connection_id] = room_id
                connection.current_room_id = room_id
                room.last_activity_at = datetime.now()
                event = MemberEvent(
                    type="member-joined",
                    identity_id=connection.identity_id,
                    display_name=connection.display_name,
                    room_id=room_id,
                )
                await self._fan_out_locked(room, event, exclude=connection_id)
                logger.info(f"{connection.identity_id} joined room {room_id} (members: {len(room.members)})")
                return self._snapshot(room, exclude=connection_id)

    async def leave(self, connection: Connection) -> Optional[str]:
        """Drop the connection's membership. Returns the room left, if any."""
        async with self._lock:
            room_id = self._room_of.get(connection.connection_id)
            if room_id is None:
                return None
            room = self._rooms.get(room_id)
            if room is None:
                self._room_of.pop(connection.connection_id, None)
                connection.current_room_id = None
                return room_id
            async with room.lock:
                await self._remove_member_locked(room, connection)
            return room_id

    async def broadcast(
        self,
        room_id: str,
        event: OutboundEvent,
        exclude: Optional[str] = None,
        require_member: Optional[str] = None,
        touch: bool = False,
    ) -> int:
        """Deliver ``event`` to every member of ``room_id``, one broadcast per room at a time."""
        room = self._rooms.get(room_id)
        if room is None:
            raise RoomNotFound(f"Room '{room_id}' does not exist")
        async with room.lock:
            if self._rooms.get(room_id) is not room:
                raise RoomNotFound(f"Room '{room_id}' was closed")
            if require_member is not None and require_member not in room.members:
                raise NotAMember(f"Not a member of room '{room_id}'")
            if touch:
                room.last_activity_at = datetime.now()
            return await self._fan_out_locked(room, event, exclude=exclude)

    async def prune_empty(self) -> int:
        async with self._lock:
            empty = [room_id for room_id, room in self._rooms.items() if not room.members]
            for room_id in empty:
                del self._rooms[room_id]
                logger.info(f"Pruned empty room {room_id}")
            return len(empty)

    def members_of(self, room_id: str) -> Set[str]:
        room = self._rooms.get(room_id)
        return set(room.members) if room else set()

    def room_of(self, connection_id: str) -> Optional[str]:
        return self._room_of.get(connection_id)

    def get(self, room_id: str) -> Optional[RoomSnapshot]:
        room = self._rooms.get(room_id)
        return self._snapshot(room) if room else None

    def rooms(self) -> List[RoomSnapshot]:
        return [self._snapshot(room) for room in sorted(self._rooms.values(), key=lambda r: r.room_id)]

    def __contains__(self, room_id: str) -> bool:
        return room_id in self._rooms

    async def _remove_member_locked(self, room: Room, connection: Connection):
        connection_id = connection.connection_id
        room.members.discard(connection_id)
        self._room_of.pop(connection_id, None)
        connection.current_room_id = None
        if not room.members:
            # Nobody is left to observe the deletion
            del self._rooms[room.room_id]
            logger.info(f"{connection.identity_id} left room {room.room_id}, room is empty and was deleted")
            return
        event = MemberEvent(
            type="member-left",
            identity_id=connection.identity_id,
            display_name=connection.display_name,
            room_id=room.room_id,
        )
        await self._fan_out_locked(room, event)
        logger.info(f"{connection.identity_id} left room {room.room_id} (members: {len(room.members)})")

    async def _fan_out_locked(self, room: Room, event: OutboundEvent, exclude: Optional[str] = None) -> int:
        delivered = 0
        for connection_id in list(room.members):
            if connection_id == exclude:
                continue
            member = self._registry.lookup_by_connection(connection_id)
            if member is None:
                logger.warning(f"Room {room.room_id} member {connection_id} is not registered, skipping")
                continue
            if await member.send(event):
                delivered += 1
        logger.debug(f"Fanned out {event.type} to {delivered} members of room {room.room_id}")
        return delivered

    def _snapshot(self, room: Room, exclude: Optional[str] = None) -> RoomSnapshot:
        members = []
        for connection_id in sorted(room.members):
            if connection_id == exclude:
                continue
            member = self._registry.lookup_by_connection(connection_id)
            if member is None:
                continue
            members.append(RoomMember(
                connection_id=connection_id,
                identity_id=member.identity_id,
                display_name=member.display_name,
            ))
        return RoomSnapshot(
            room_id=room.room_id,
            display_name=room.display_name,
            members=members,
            created_at=room.created_at,
            last_activity_at=room.last_activity_at,
        )

    @asynccontextmanager
    async def _locked(self, *rooms: Optional[Room]):
        # Two room locks are always taken in room_id order
        unique = {room.room_id: room for room in rooms if room is not None}
        async with AsyncExitStack() as stack:
            for room_id in sorted(unique):
                await stack.enter_async_context(unique[room_id].lock)
            yield
