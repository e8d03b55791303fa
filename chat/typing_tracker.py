import asyncio
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple

from chat.connections import Connection, ConnectionRegistry
from chat.errors import NotAMember, RoomNotFound
from chat.rooms import RoomManager
from constants import TYPING_EXPIRY_SECONDS
from logging_config import get_logger
from schemas.events import TypingEvent

logger = get_logger(__name__)


@dataclass(frozen=True)
class Destination:
    kind: str  # "private" or "room"
    target: str

    @property
    def key(self) -> str:
        return f"{self.kind}:{self.target}"


@dataclass(eq=False)
class TypingMark:
    connection: Connection
    destination: Destination
    expires_at: float = 0.0
    timer: Optional[asyncio.Task] = None


class TypingTracker:
    """Ephemeral "is typing" marks, one per (connection, destination).

    Every mark ends with exactly one ``typing-stopped``: from an explicit stop,
    from the expiry timer, or from room-leave/disconnect cleanup.
    """

    def __init__(self, registry: ConnectionRegistry, rooms: RoomManager, expiry_seconds: float = TYPING_EXPIRY_SECONDS):
        self._registry = registry
        self._rooms = rooms
        self.expiry_seconds = expiry_seconds
        self._marks: Dict[Tuple[str, str], TypingMark] = {}
        self._lock = asyncio.Lock()

    async def start_typing(self, connection: Connection, destination: Destination) -> bool:
        """Mark ``connection`` as typing. Returns False when it only re-armed an existing mark."""
        if destination.kind == "room" and self._rooms.room_of(connection.connection_id) != destination.target:
            raise NotAMember(f"Not a member of room '{destination.target}'")

        key = (connection.connection_id, destination.key)
        async with self._lock:
            # Disconnect cleanup may have run while this call waited for the lock
            if self._registry.lookup_by_connection(connection.connection_id) is not connection:
                logger.debug(f"Ignoring typing-start from departed connection {connection.connection_id}")
                return False
            if destination.kind == "room" and self._rooms.room_of(connection.connection_id) != destination.target:
                raise NotAMember(f"Not a member of room '{destination.target}'")
            mark = self._marks.get(key)
            if mark is not None:
                self._arm(key, mark)
                return False
            mark = TypingMark(connection=connection, destination=destination)
            self._marks[key] = mark
            self._arm(key, mark)
            try:
                await self._notify(mark, "typing-started")
            except NotAMember:
                del self._marks[key]
                self._cancel_timer(mark)
                raise
            return True

    async def stop_typing(self, connection: Connection, destination: Destination) -> bool:
        async with self._lock:
            mark = self._marks.pop((connection.connection_id, destination.key), None)
            if mark is None:
                return False
            self._cancel_timer(mark)
            await self._notify(mark, "typing-stopped")
            return True

    async def clear_connection(self, connection: Connection) -> int:
        """Stop every mark owned by ``connection`` (disconnect)."""
        async with self._lock:
            keys = [key for key in self._marks if key[0] == connection.connection_id]
            return await self._clear_locked(keys)

    async def clear_room(self, connection: Connection, room_id: str) -> int:
        """Stop the mark ``connection`` holds in ``room_id`` (room leave)."""
        async with self._lock:
            key = (connection.connection_id, Destination("room", room_id).key)
            return await self._clear_locked([key] if key in self._marks else [])

    def typing_in(self, destination: Destination) -> Set[str]:
        return {mark.connection.identity_id for (_, key), mark in self._marks.items() if key == destination.key}

    def marks(self) -> List[TypingMark]:
        return list(self._marks.values())

    async def close(self):
        """Cancel all timers without notifying anyone (process shutdown)."""
        async with self._lock:
            for mark in self._marks.values():
                self._cancel_timer(mark)
            self._marks.clear()

    async def _clear_locked(self, keys) -> int:
        for key in keys:
            mark = self._marks.pop(key)
            self._cancel_timer(mark)
            await self._notify(mark, "typing-stopped")
        return len(keys)

    def _arm(self, key: Tuple[str, str], mark: TypingMark):
        self._cancel_timer(mark)
        loop = asyncio.get_running_loop()
        mark.expires_at = loop.time() + self.expiry_seconds
        mark.timer = loop.create_task(self._expire_after(key, mark))

    def _cancel_timer(self, mark: TypingMark):
        if mark.timer is not None and mark.timer is not asyncio.current_task():
            mark.timer.cancel()
        mark.timer = None

    async def _expire_after(self, key: Tuple[str, str], mark: TypingMark):
        await asyncio.sleep(self.expiry_seconds)
        async with self._lock:
            if self._marks.get(key) is not mark:
                return
            del self._marks[key]
            mark.timer = None
            logger.debug(f"Typing mark {key} expired")
            await self._notify(mark, "typing-stopped")

    async def _notify(self, mark: TypingMark, event_type: str):
        sender = mark.connection
        destination = mark.destination
        event = TypingEvent(
            type=event_type,
            identity_id=sender.identity_id,
            destination=destination.target,
            destination_kind=destination.kind,
        )
        if destination.kind == "room":
            require_member = sender.connection_id if event_type == "typing-started" else None
            try:
                await self._rooms.broadcast(
                    destination.target, event, exclude=sender.connection_id, require_member=require_member,
                )
            except RoomNotFound:
                logger.debug(f"Room {destination.target} is gone, {event_type} for {sender.identity_id} has no audience")
            return
        recipient = self._registry.lookup(destination.target)
        if recipient is not None and recipient is not sender:
            await recipient.send(event)
