import logging
from typing import Dict, List
from fastapi import WebSocket
from .config import config

logger = logging.getLogger(__name__)

class ConnectionManager:
    def __init__(self, max_connections: int = None):
        self.active_connections: Dict[str, List[WebSocket]] = {}
        self.max_connections = max_connections or config.ws_max_connections

    @property
    def connection_count(self) -> int:
        return sum(len(sockets) for sockets in self.active_connections.values())

    async def connect(self, driver_id: str, websocket: WebSocket) -> bool:
        """Accept a driver's socket; refuse it when the server is at capacity."""
        if self.connection_count >= self.max_connections:
            await websocket.close(code=1013)
            logger.warning("Refused WebSocket for driver %s: connection limit reached", driver_id)
            return False
        await websocket.accept()
        self.active_connections.setdefault(driver_id, []).append(websocket)
        logger.info("WebSocket connected for driver %s. Total connections: %d", driver_id, self.connection_count)
        return True

    def disconnect(self, driver_id: str, websocket: WebSocket):
        sockets = self.active_connections.get(driver_id, [])
        if websocket in sockets:
            sockets.remove(websocket)
            if not sockets:
                del self.active_connections[driver_id]
            logger.info("WebSocket disconnected for driver %s. Total connections: %d", driver_id, self.connection_count)

    async def send_personal_message(self, message: dict, websocket: WebSocket, driver_id: str):
        """Send message to a specific WebSocket client."""
        try:
            await websocket.send_json(message)
        except Exception as e:
            logger.warning("WebSocket personal message error: %s", e)
            self.disconnect(driver_id, websocket)
