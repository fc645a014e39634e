"""Redis pub/sub fan-out for workflow notifications.

Services publish JSON messages on per-user or per-role channels; the API
server subscribes on behalf of connected WebSocket clients and forwards them.
"""

import asyncio
import json
import logging
from typing import Any

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class NotificationManager:
    """Owns the Redis connection, the channel subscriptions and the sockets."""

    def __init__(self):
        # channel -> connected WebSockets
        self._connections: dict[str, list[WebSocket]] = {}
        self._redis = None
        self._pubsub = None
        self._listener_task: asyncio.Task | None = None

    async def connect(self, redis_url: str) -> None:
        import redis.asyncio as aioredis

        self._redis = aioredis.from_url(redis_url)
        self._pubsub = self._redis.pubsub()
        logger.info("[NotificationManager] Connected to Redis for pub/sub")

    async def publish(self, channel: str, message: dict[str, Any]) -> int:
        """Publish to Redis. Returns the number of subscribers that received it."""
        if self._redis is None:
            raise RuntimeError("NotificationManager is not connected to Redis")
        return await self._redis.publish(channel, json.dumps(message, default=str))

    async def subscribe(self, websocket: WebSocket, channel: str) -> None:
        if channel not in self._connections:
            self._connections[channel] = []
            await self._pubsub.subscribe(channel)
            logger.debug("[NotificationManager] Subscribed to Redis channel %s", channel)
        self._connections[channel].append(websocket)

    async def disconnect(self, websocket: WebSocket) -> None:
        """Remove a WebSocket from all channels, dropping empty subscriptions."""
        emptied = []
        for channel, sockets in self._connections.items():
            if websocket in sockets:
                sockets.remove(websocket)
                if not sockets:
                    emptied.append(channel)

        for channel in emptied:
            await self._pubsub.unsubscribe(channel)
            del self._connections[channel]
            logger.debug("[NotificationManager] Unsubscribed from Redis channel %s", channel)

    async def start_listener(self) -> None:
        self._listener_task = asyncio.create_task(self._listen())

    async def stop_listener(self) -> None:
        if self._listener_task:
            self._listener_task.cancel()
            try:
                await self._listener_task
            except asyncio.CancelledError:
                pass
            self._listener_task = None

    async def _listen(self) -> None:
        try:
            async for message in self._pubsub.listen():
                if message["type"] != "message":
                    continue
                channel = message["channel"]
                if isinstance(channel, bytes):
                    channel = channel.decode()
                data = message["data"]
                if isinstance(data, bytes):
                    data = data.decode()
                await self._broadcast(channel, data)
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("[NotificationManager] Listener stopped")

    async def _broadcast(self, channel: str, data: str) -> None:
        dead_sockets = []
        for ws in self._connections.get(channel, []):
            try:
                await ws.send_text(data)
            except Exception:
                dead_sockets.append(ws)

        for ws in dead_sockets:
            self._connections[channel].remove(ws)

    async def close(self) -> None:
        await self.stop_listener()
        if self._pubsub:
            await self._pubsub.close()
        if self._redis:
            await self._redis.close()
        logger.info("[NotificationManager] Closed Redis connection")


notification_manager: NotificationManager | None = None


def get_notification_manager() -> NotificationManager:
    global notification_manager
    if notification_manager is None:
        raise RuntimeError("NotificationManager not initialized")
    return notification_manager


async def init_notification_manager(redis_url: str) -> NotificationManager:
    global notification_manager
    notification_manager = NotificationManager()
    await notification_manager.connect(redis_url)
    await notification_manager.start_listener()
    return notification_manager


async def close_notification_manager() -> None:
    global notification_manager
    if notification_manager:
        await notification_manager.close()
        notification_manager = None
