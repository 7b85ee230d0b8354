"""Live order events pushed to connected dashboards over WebSocket"""
from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder
from typing import Any, Set
import logging

logger = logging.getLogger(__name__)

NEW_ORDER = "newOrder"
PAYMENT = "payment"
ORDER_STATUS_UPDATE = "orderStatusUpdate"


class EventBroadcaster:
    """Fan-out of {event, data} messages to every open socket"""

    def __init__(self):
        self.connections: Set[WebSocket] = set()

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.connections.add(websocket)
        logger.info(f"Socket connected ({len(self.connections)} open)")

    def disconnect(self, websocket: WebSocket):
        self.connections.discard(websocket)
        logger.info(f"Socket disconnected ({len(self.connections)} open)")

    async def publish(self, event: str, data: Any):
        message = {"event": event, "data": jsonable_encoder(data, by_alias=True)}
        for websocket in list(self.connections):
            try:
                await websocket.send_json(message)
            except Exception as e:
                logger.warning(f"Dropping socket after failed send: {e}")
                self.disconnect(websocket)


broadcaster = EventBroadcaster()
