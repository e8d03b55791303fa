import asyncio
import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import WebSocket

from chat.errors import TransportFailure
from constants import OUTBOUND_QUEUE_SIZE, WS_CLOSE_BACKLOG
from logging_config import get_logger
from schemas.events import OutboundEvent

logger = get_logger(__name__)


@dataclass(frozen=True)
class _CloseFrame:
    code: int
    reason: str


class WebSocketConnection:
    """ConnectionHandle over a FastAPI WebSocket.

    ``send`` only enqueues; a writer task drains the queue to the socket, so a
    slow client never stalls a room fan-out. A full queue drops the backlog and
    closes the socket; a failed write marks the handle closed. Either way the
    reaper evicts it.
    """

    def __init__(self, websocket: WebSocket, queue_size: int = OUTBOUND_QUEUE_SIZE, connection_id: Optional[str] = None):
        self.websocket = websocket
        self.connection_id = connection_id or str(uuid.uuid4())
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        # _closed: no more sends accepted. _close_requested: a close frame is on its way.
        self._closed = False
        self._close_requested = False
        self._writer: Optional[asyncio.Task] = None
        self._closer: Optional[asyncio.Task] = None

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self):
        if self._writer is None:
            self._writer = asyncio.create_task(self._drain())

    async def send(self, event: OutboundEvent):
        if self._closed:
            raise TransportFailure(f"Connection {self.connection_id} is closed")
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(f"Outbound queue full for connection {self.connection_id}, closing it")
            self._abort(WS_CLOSE_BACKLOG, "Outbound queue overflow")
            raise TransportFailure(f"Outbound queue full for connection {self.connection_id}")

    async def close(self, code: int = 1000, reason: str = ""):
        if self._close_requested:
            return
        self._close_requested = True
        self._closed = True
        if self._writer is None or self._writer.done():
            await self._close_socket(code, reason)
            return
        try:
            # Queued events are flushed before the close frame
            self._queue.put_nowait(_CloseFrame(code, reason))
        except asyncio.QueueFull:
            self._abort(code, reason)

    async def stop(self):
        """Stop the writer once the endpoint is done with the socket."""
        self._closed = True
        if self._writer and not self._writer.done():
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass
        if self._closer and not self._closer.done():
            await self._closer

    def _abort(self, code: int, reason: str):
        """Drop the backlog and close the socket from its own task."""
        self._closed = True
        self._close_requested = True
        if self._closer is None:
            self._closer = asyncio.get_running_loop().create_task(self._abort_writer(code, reason))

    async def _abort_writer(self, code: int, reason: str):
        if self._writer and not self._writer.done():
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass
        await self._close_socket(code, reason)

    async def _drain(self):
        try:
            while True:
                item = await self._queue.get()
                if isinstance(item, _CloseFrame):
                    await self._close_socket(item.code, item.reason)
                    return
                await self.websocket.send_text(item.model_dump_json(exclude_none=True))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._closed = True
            logger.warning(f"Write to connection {self.connection_id} failed: {e}")

    async def _close_socket(self, code: int, reason: str):
        try:
            await self.websocket.close(code=code, reason=reason)
            logger.debug(f"Closed connection {self.connection_id} with code {code}")
        except Exception as e:
            logger.debug(f"Error closing WebSocket {self.connection_id}: {e}")
