from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Depends

from masonchat.core.config import settings
from masonchat.core.logger import configure_logging, get_logger

# Configure logging
configure_logging()
logger = get_logger(__name__)

from masonchat.core.db import create_tables, get_session_factory
from masonchat.api.chat_router import ChatRouter
from masonchat.services.presence import PresenceTracker
from masonchat.websocket.handlers import ChannelHandler
from masonchat.websocket.manager import ConnectionManager


app = FastAPI(
    title=settings.PROJECT_NAME,
    debug=settings.DEBUG,
)

presence = PresenceTracker()
manager = ConnectionManager(presence)
chat_router = ChatRouter(presence)

app.include_router(chat_router.router, prefix="/api")


@app.on_event("startup")
async def on_startup():
    logger.info("Creating database tables (startup)")
    await create_tables()
    logger.info("Database tables ensured (startup)")


@app.get("/health")
async def health_check():
    return {"status": "ok"}


@app.websocket("/ws/chat")
async def websocket_chat(
    websocket: WebSocket,
    session_factory=Depends(get_session_factory),
):
    """
    Real-time channel. Clients emit `user_online`, `join_room` and
    `send_message`; the server pushes `receive_message` and `status_update`.
    Frames are JSON objects: {"event": ..., "data": ...}.
    """
    handler = ChannelHandler(manager, session_factory)
    conn = await manager.connect(websocket)

    try:
        while True:
            try:
                frame = await websocket.receive_json()
            except ValueError:
                logger.warning("Non-JSON frame from %r", conn)
                await conn.emit("error", {"message": "Invalid JSON format"})
                continue
            await handler.handle(conn, frame)

    except WebSocketDisconnect:
        await manager.disconnect(conn)
    except Exception:
        await manager.disconnect(conn)
        logger.exception("WebSocket error for %r", conn)
        await websocket.close()
