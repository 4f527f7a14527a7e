import json
import logging

from fastapi import WebSocket
from starlette.websockets import WebSocketState

logger = logging.getLogger(__name__)


class BroadcastHub:
    """Fan-out of live payloads to connected websocket subscribers.

    Delivery is best-effort: a message reaches whoever is connected when it
    is sent, nothing is queued for later subscribers.
    """

    def __init__(self):
        self._clients: set = set()

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self._clients.add(websocket)
        logger.info(f"Subscriber connected ({len(self._clients)} total)")

    def disconnect(self, websocket: WebSocket):
        self._clients.discard(websocket)
        logger.info(f"Subscriber disconnected ({len(self._clients)} total)")

    async def broadcast(self, payload: dict) -> int:
        """Send payload to every open subscriber, returning how many received it."""
        message = json.dumps(payload)
        delivered = 0
        for websocket in list(self._clients):
            if websocket.client_state != WebSocketState.CONNECTED:
                self._clients.discard(websocket)
                continue
            try:
                await websocket.send_text(message)
                delivered += 1
            except Exception as e:
                logger.debug(f"Dropping subscriber after send failure: {e}")
                self._clients.discard(websocket)
        return delivered
