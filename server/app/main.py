import logging
from contextlib import asynccontextmanager
from uuid import UUID

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware

from .config import load_settings
from .core.services.auth import decode_token
from .core.services.notification_manager import (
    close_notification_manager,
    get_notification_manager,
    init_notification_manager,
)
from .database import close_pool, get_connection, init_db, init_pool
from .onboarding.routes import onboarding_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    settings = load_settings()
    logger.info("[Innkeeper] Starting server on port %s (%s)", settings.port, settings.environment)

    # Initialize database
    await init_pool(settings.database_url)
    await init_db()

    # Redis pub/sub for reviewer and applicant notifications
    await init_notification_manager(settings.redis_url)
    logger.info("[Innkeeper] Redis notification manager connected to %s", settings.redis_url)

    yield

    # Cleanup
    await close_notification_manager()
    await close_pool()
    logger.info("[Innkeeper] Server shutdown complete")


app = FastAPI(
    title="Innkeeper HR Onboarding API",
    description="New-hire onboarding for hotel and motel properties",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS - allow frontend dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://localhost:5174",
        "http://localhost:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(onboarding_router, prefix="/api")


@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "innkeeper-onboarding"}


def notification_channels(user_id: UUID, role: str, organization_id) -> list[str]:
    """Channels a signed-in user listens on: their own plus their property's role queue."""
    channels = [f"user:{user_id}"]
    if organization_id is not None:
        if role in ("admin", "hr"):
            channels.append(f"org:{organization_id}:hr")
        elif role == "manager":
            channels.append(f"org:{organization_id}:manager")
    return channels


@app.websocket("/ws/notifications")
async def notifications_websocket(websocket: WebSocket, token: str = ""):
    """
    WebSocket endpoint for real-time onboarding notifications.

    Connect with ``?token=<access token>``. The server subscribes the socket to
    the user's channels and pushes messages such as:
        {"type": "onboarding", "kind": "new-hire-alert", "payload": {...}}
    """
    payload = decode_token(token) if token else None
    try:
        user_id = UUID(payload.sub) if payload else None
    except ValueError:
        user_id = None
    if user_id is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    async with get_connection() as conn:
        user_row = await conn.fetchrow(
            "SELECT id, role, organization_id, is_active FROM users WHERE id = $1",
            user_id,
        )
    if not user_row or not user_row["is_active"]:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    manager = get_notification_manager()
    channels = notification_channels(user_row["id"], user_row["role"], user_row["organization_id"])
    for channel in channels:
        await manager.subscribe(websocket, channel)
    await websocket.send_json({"type": "subscribed", "channels": channels})

    try:
        while True:
            data = await websocket.receive_json()
            if data.get("action") == "ping":
                await websocket.send_json({"type": "pong"})
    except WebSocketDisconnect:
        pass
    finally:
        await manager.disconnect(websocket)
