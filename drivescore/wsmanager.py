import logging
from typing import List
from fastapi import WebSocket

logger = logging.getLogger(__name__)

class ConnectionManager:
    """Live trip notification fan-out to WebSocket clients."""

    def __init__(self, max_connections: int = 100):
        self.max_connections = max_connections
        self.active_connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket) -> bool:
        """Accept a client; refuse it with close code 1013 once at capacity."""
        await websocket.accept()
        if len(self.active_connections) >= self.max_connections:
            logger.warning(f"WebSocket refused, {self.max_connections} connections already open")
            await websocket.close(code=1013)
            return False
        self.active_connections.append(websocket)
        logger.info(f"WebSocket connected. Total connections: {len(self.active_connections)}")
        return True

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
            logger.info(f"WebSocket disconnected. Total connections: {len(self.active_connections)}")

    async def broadcast(self, message: dict) -> int:
        """Broadcast message to all connected WebSocket clients; return how many received it."""
        if not self.active_connections:
            return 0

        delivered = 0
        for connection in list(self.active_connections):
            try:
                await connection.send_json(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"WebSocket broadcast error: {e}")
                # Remove bad connection
                self.disconnect(connection)
        return delivered
