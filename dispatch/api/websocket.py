"""WebSocket subscriptions for driver and customer notifications."""

import json
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError

from dispatch.utils.logging import get_logger

logger = get_logger(__name__)

RECIPIENT_TYPES = {"driver", "customer"}


class WebSocketMessage(BaseModel):
    """WebSocket message format."""

    type: str  # "ping"
    content: str | None = None
    metadata: dict[str, Any] = {}


class ConnectionManager:
    """Manages WebSocket connections, several per channel."""

    def __init__(self) -> None:
        self.active_connections: dict[str, list[WebSocket]] = {}

    async def connect(self, channel: str, websocket: WebSocket) -> None:
        """Accept and register a WebSocket connection."""
        await websocket.accept()
        self.active_connections.setdefault(channel, []).append(websocket)
        logger.info("websocket_connected", channel=channel)

    def disconnect(self, channel: str, websocket: WebSocket) -> None:
        """Remove a WebSocket connection."""
        connections = self.active_connections.get(channel, [])
        if websocket in connections:
            connections.remove(websocket)
            logger.info("websocket_disconnected", channel=channel)
        if not connections:
            self.active_connections.pop(channel, None)

    async def send_to(self, channel: str, message: dict[str, Any]) -> int:
        """Send a message to every connection on a channel.

        Returns how many connections received it; broken sockets are dropped.
        """
        delivered = 0
        for websocket in list(self.active_connections.get(channel, [])):
            try:
                await websocket.send_json(message)
                delivered += 1
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.warning("websocket_send_failed", channel=channel, error=str(e))
                self.disconnect(channel, websocket)
        return delivered


# Global connection manager
manager = ConnectionManager()


async def handle_subscription(
    websocket: WebSocket,
    recipient_type: str,
    recipient_id: str,
) -> None:
    """
    Keep a notification subscription open.

    Args:
        websocket: WebSocket connection
        recipient_type: "driver" or "customer"
        recipient_id: Driver or customer identifier
    """
    if recipient_type not in RECIPIENT_TYPES:
        await websocket.close(code=1003, reason="Unknown recipient type")
        return

    channel = f"{recipient_type}:{recipient_id}"
    await manager.connect(channel, websocket)

    await websocket.send_json({"type": "connected", "channel": channel})

    try:
        while True:
            data = await websocket.receive_text()

            try:
                ws_message = WebSocketMessage(**json.loads(data))
                if ws_message.type == "ping":
                    await websocket.send_json({"type": "pong"})

            except (ValidationError, json.JSONDecodeError, TypeError) as e:
                await websocket.send_json(
                    {
                        "type": "error",
                        "message": "Invalid message format",
                        "details": str(e),
                    }
                )

    except WebSocketDisconnect:
        manager.disconnect(channel, websocket)
        logger.info("websocket_client_disconnected", channel=channel)
