"""
Notification channel from the core to web clients.

The controller reports session events (``qr``, ``connected``,
``disconnected``, ``restarted``, ``reconnected``, ``error``) through a
``NotificationChannel``. ``WebSocketHub`` fans them out to every connected
web client.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Set

from starlette.websockets import WebSocket

from chatwarden.logger import get_logger

logger = get_logger(__name__)


class NotificationChannel(ABC):
    @abstractmethod
    async def emit(self, event: str, data: Dict[str, Any]) -> None:
        """Deliver one event. Implementations must not raise on delivery failure."""


class WebSocketHub(NotificationChannel):
    """Broadcasts events as ``{"event": ..., "data": ...}`` JSON frames."""

    def __init__(self):
        self.clients: Set[WebSocket] = set()

    def connect(self, websocket: WebSocket) -> None:
        self.clients.add(websocket)
        logger.info(f"Web client connected ({len(self.clients)} total)")

    def disconnect(self, websocket: WebSocket) -> None:
        self.clients.discard(websocket)
        logger.info(f"Web client disconnected ({len(self.clients)} total)")

    async def emit(self, event: str, data: Dict[str, Any]) -> None:
        frame = {"event": event, "data": data}
        for websocket in list(self.clients):
            try:
                await websocket.send_json(frame)
            except Exception as e:
                logger.warning(f"Dropping web client after failed send: {e}")
                self.clients.discard(websocket)

    async def send_to(self, websocket: WebSocket, event: str, data: Any) -> None:
        """Reply to a single client."""
        try:
            await websocket.send_json({"event": event, "data": data})
        except Exception as e:
            logger.warning(f"Failed to reply to web client: {e}")
            self.clients.discard(websocket)
