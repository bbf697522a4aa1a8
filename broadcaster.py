"""Realtime fan-out of public post events to connected clients.

Delivery is at-most-once to whoever is attached when the event is
published. Nothing is queued or replayed for late or reconnecting clients.
"""
from typing import Any, Callable, List, Tuple

from fastapi import WebSocket

from logging_config import get_logger

logger = get_logger("broadcast")

NEW_POST = "new_post"
UPDATE_POST = "update_post"
DELETE_POST = "delete_post"
POSTS_UPDATED = "posts_updated"


class Broadcaster:
    """Publish-only side channel. Subclasses decide the transport."""

    async def publish(self, event: str, payload: Any) -> None:
        raise NotImplementedError


class ConnectionManager(Broadcaster):
    """Sends every event to all WebSockets attached to /ws"""

    def __init__(self):
        self.active_connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        # registered before accept so no event is missed once the client sees the handshake
        self.active_connections.append(websocket)
        await websocket.accept()
        logger.info("Client connected (%d active)", len(self.active_connections))

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
        logger.info("Client disconnected (%d active)", len(self.active_connections))

    async def publish(self, event: str, payload: Any) -> None:
        message = {"event": event, "data": payload}
        for websocket in list(self.active_connections):
            try:
                await websocket.send_json(message)
            except Exception as e:
                logger.warning("Dropping connection after failed send: %s", e)
                self.disconnect(websocket)
        logger.debug("Published %s to %d client(s)", event, len(self.active_connections))


class RecordingBroadcaster(Broadcaster):
    """Keeps published events in memory instead of sending them"""

    def __init__(self):
        self.events: List[Tuple[str, Any]] = []

    async def publish(self, event: str, payload: Any) -> None:
        self.events.append((event, payload))

    def of_kind(self, event: str) -> List[Any]:
        return [payload for kind, payload in self.events if kind == event]


class LocalBroadcaster(Broadcaster):
    """Calls in-process subscribers directly, e.g. ``PostStore.apply_event``"""

    def __init__(self):
        self.subscribers: List[Callable[[str, Any], None]] = []

    def subscribe(self, callback: Callable[[str, Any], None]):
        self.subscribers.append(callback)

    async def publish(self, event: str, payload: Any) -> None:
        for callback in list(self.subscribers):
            callback(event, payload)
