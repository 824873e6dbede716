"""WebSocket handler for real-time session events."""

import asyncio
import json
import logging
from collections import deque

from fastapi import WebSocket

logger = logging.getLogger(__name__)

LOG_BACKLOG = 200


class ConnectionManager:
    """
    Manages WebSocket connections and broadcasts session events.

    Notifications are also kept in a bounded log so a client that connects
    late still sees what happened.
    """

    def __init__(self, backlog: int = LOG_BACKLOG) -> None:
        self._connections: list[WebSocket] = []
        self._lock = asyncio.Lock()
        self._log: deque[dict] = deque(maxlen=backlog)

    @property
    def log(self) -> list[dict]:
        return list(self._log)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        for entry in self._log:
            await websocket.send_text(json.dumps({"event": "notification", "data": entry}))
        async with self._lock:
            self._connections.append(websocket)
        logger.info(f"WebSocket client connected. Total: {len(self._connections)}")

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            if websocket in self._connections:
                self._connections.remove(websocket)
        logger.info(f"WebSocket client disconnected. Total: {len(self._connections)}")

    async def broadcast(self, event: str, data: dict) -> None:
        """Broadcast an event to all connected WebSocket clients."""
        message = json.dumps({"event": event, "data": data})
        async with self._lock:
            dead: list[WebSocket] = []
            for ws in self._connections:
                try:
                    await ws.send_text(message)
                except Exception:
                    dead.append(ws)
            for ws in dead:
                self._connections.remove(ws)

    async def handle_event(self, event_type: str, data: dict) -> None:
        """Event handler compatible with SessionManager.on_event()."""
        if event_type == "notification":
            self._log.append(data)
        await self.broadcast(event_type, data)
