from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from routers.rooms import rooms_router
from routers.users import users_router
from backend import create_backend
from chat.connections import DisconnectReason
from chat.engine import ChatEngine, EngineSettings
from chat.transport import WebSocketConnection
from constants import CORS_ORIGINS, LOG_FILE, LOG_LEVEL
from logging_config import get_logger, setup_logging

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)


async def websocket_endpoint(websocket: WebSocket, identity_id: Optional[str] = None):
    """Chat connection endpoint.

    Query parameters:
    - identity_id: Optional; announces the connection immediately. Otherwise the
      first frame must be ``{"type": "announce", "identity_id": ...}``.
    """
    engine: ChatEngine = websocket.app.state.engine
    await websocket.accept()
    handle = WebSocketConnection(websocket)
    handle.start()
    logger.info(f"WebSocket connection {handle.connection_id} accepted from {websocket.client.host if websocket.client else 'unknown'}")

    reason = DisconnectReason.CLIENT_DISCONNECT
    try:
        if identity_id:
            await engine.handle_frame(handle, {"type": "announce", "identity_id": identity_id})

        message_count = 0
        while True:
            try:
                data = await websocket.receive_text()
            except WebSocketDisconnect as e:
                logger.info(f"WebSocket {handle.connection_id} disconnected (code {e.code})")
                break
            except RuntimeError as e:
                # Receiving after the engine closed this socket (superseded or reaped)
                logger.debug(f"WebSocket {handle.connection_id} no longer readable: {e}")
                break
            message_count += 1
            logger.debug(f"Received frame #{message_count} from connection {handle.connection_id}")
            await engine.handle_frame(handle, data)
    except Exception as e:
        reason = DisconnectReason.TRANSPORT_FAILURE
        logger.error(f"WebSocket error for connection {handle.connection_id}: {e}", exc_info=True)
    finally:
        await engine.disconnect(handle, reason)
        await handle.stop()


def create_app(backend=None, settings: Optional[EngineSettings] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        storage = backend if backend is not None else create_backend()
        storage.ping()
        engine = ChatEngine(storage, settings)
        app.state.backend = storage
        app.state.engine = engine
        await engine.start()
        try:
            yield
        finally:
            await engine.shutdown()

    app = FastAPI(lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(rooms_router)
    app.include_router(users_router)
    app.add_api_websocket_route("/ws", websocket_endpoint)

    logger.info("FastAPI application initialized")
    return app


app = create_app()
