import asyncio
import time
from datetime import datetime
from typing import Awaitable, Callable, Optional

from chat.connections import Connection, ConnectionHandle, ConnectionRegistry, DisconnectReason
from chat.rooms import RoomManager
from constants import HEARTBEAT_IDLE_SECONDS, REAPER_INTERVAL_SECONDS, STALE_CONNECTION_SECONDS, WS_CLOSE_STALE
from logging_config import get_logger
from schemas.events import HeartbeatEvent

logger = get_logger(__name__)

DisconnectFn = Callable[[ConnectionHandle, DisconnectReason], Awaitable[Optional[Connection]]]


class StaleSessionReaper:
    """Periodic safety net for disconnects the transport never reported.

    Each sweep pings connections that have been quiet for ``heartbeat_after_seconds``.
    Any inbound frame (the ``pong`` reply included) refreshes ``last_seen``, so
    only clients that stop answering reach ``stale_after_seconds``.

    Evictions go through ``disconnect`` (the engine's normal removal path) so
    presence-offline, member-left and typing-stopped are never skipped.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        rooms: RoomManager,
        disconnect: DisconnectFn,
        interval_seconds: float = REAPER_INTERVAL_SECONDS,
        stale_after_seconds: float = STALE_CONNECTION_SECONDS,
        heartbeat_after_seconds: float = HEARTBEAT_IDLE_SECONDS,
    ):
        self._registry = registry
        self._rooms = rooms
        self._disconnect = disconnect
        self.interval_seconds = interval_seconds
        self.stale_after_seconds = stale_after_seconds
        self.heartbeat_after_seconds = heartbeat_after_seconds
        self._task: Optional[asyncio.Task] = None

    def is_stale(self, connection: Connection, now: Optional[float] = None) -> bool:
        now = time.monotonic() if now is None else now
        return connection.handle.closed or now - connection.last_seen > self.stale_after_seconds

    def needs_heartbeat(self, connection: Connection, now: Optional[float] = None) -> bool:
        now = time.monotonic() if now is None else now
        return now - connection.last_seen >= self.heartbeat_after_seconds

    async def sweep(self) -> int:
        now = time.monotonic()
        stale = []
        for connection in self._registry.connections():
            if self.is_stale(connection, now):
                stale.append(connection)
            elif self.needs_heartbeat(connection, now):
                await connection.send(HeartbeatEvent(timestamp=datetime.now().isoformat()))

        for connection in stale:
            logger.info(
                f"Reaping stale connection {connection.connection_id} ({connection.identity_id}), "
                f"idle {now - connection.last_seen:.0f}s, closed={connection.handle.closed}"
            )
            await self._disconnect(connection.handle, DisconnectReason.TRANSPORT_FAILURE)
            await connection.close(code=WS_CLOSE_STALE, reason="Connection timed out")

        pruned = await self._rooms.prune_empty()
        if stale or pruned:
            logger.info(f"Reaper removed {len(stale)} stale connections and {pruned} empty rooms")
        return len(stale)

    def start(self):
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())
            logger.info(
                f"Started stale-session reaper (every {self.interval_seconds}s, "
                f"heartbeat after {self.heartbeat_after_seconds}s, threshold {self.stale_after_seconds}s)"
            )

    async def stop(self):
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            logger.info("Stopped stale-session reaper")
        self._task = None

    async def _run(self):
        while True:
            try:
                await asyncio.sleep(self.interval_seconds)
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in stale-session reaper: {e}", exc_info=True)
