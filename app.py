from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError
from routers.lobby import lobby_router
from backend import create_backend
from session_router import SessionRouter
from schemas.events import InboundEvent
from constants import CORS_ORIGINS
import uuid
import asyncio
from logging_config import get_logger, setup_logging
import os

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)


async def forward_mailbox(connection_id: str, subscription, websocket: WebSocket):
    """Background task that pushes messages addressed to a connection down its socket."""
    logger.debug(f"Starting mailbox forwarder for connection: {connection_id}")
    try:
        while True:
            message = await subscription.get()
            try:
                await websocket.send_json(message)
            except Exception as e:
                # Socket is going away, the disconnect handler cleans up
                logger.warning(f"Error sending {message.get('event')} to connection {connection_id}: {e}")
                break
    except asyncio.CancelledError:
        logger.debug(f"Mailbox forwarder cancelled for connection: {connection_id}")


async def websocket_endpoint(websocket: WebSocket):
    """Signaling WebSocket: one anonymous session per connection."""
    session_router: SessionRouter = websocket.app.state.session_router
    backend = websocket.app.state.backend

    await websocket.accept()
    connection_id = str(uuid.uuid4())
    logger.info(f"WebSocket connection accepted: {connection_id}")

    # Mailbox must exist before the session is visible to other connections
    subscription = backend.subscribe(connection_id)
    session_router.connect(connection_id)
    forwarder = asyncio.create_task(forward_mailbox(connection_id, subscription, websocket))

    try:
        await websocket.send_json({"event": "connected", "data": {"connection_id": connection_id}})

        message_count = 0
        while True:
            try:
                data = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info(f"WebSocket disconnected normally for connection {connection_id}")
                break
            message_count += 1

            try:
                inbound = InboundEvent.model_validate_json(data)
            except ValidationError:
                logger.warning(f"Ignoring malformed frame #{message_count} from connection {connection_id}")
                continue

            logger.debug(f"Received {inbound.event} (#{message_count}) from connection {connection_id}")
            session_router.handle_event(connection_id, inbound.event, inbound.data)
    except Exception as e:
        logger.error(f"WebSocket error for connection {connection_id}: {e}", exc_info=True)
    finally:
        try:
            session_router.disconnect(connection_id)
        except Exception as e:
            logger.error(f"Error cleaning up session {connection_id}: {e}", exc_info=True)
        forwarder.cancel()
        subscription.close()
        try:
            await forwarder
        except asyncio.CancelledError:
            pass
        logger.info(f"Connection {connection_id} cleaned up")


def create_app(backend=None) -> FastAPI:
    app = FastAPI()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    backend = backend if backend is not None else create_backend()
    app.state.backend = backend
    app.state.session_router = SessionRouter(backend)

    app.include_router(lobby_router)
    app.websocket("/ws")(websocket_endpoint)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    logger.info("FastAPI application initialized")
    return app


app = create_app()
