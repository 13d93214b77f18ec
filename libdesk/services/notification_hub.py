import logging
from collections import defaultdict
from typing import Dict, List

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect

logger = logging.getLogger(__name__)


class NotificationHub:
    """Live WebSocket connections keyed by user id; a user may have several tabs open."""

    def __init__(self):
        self.active: Dict[str, List[WebSocket]] = defaultdict(list)

    async def connect(self, ws: WebSocket, user_id: str):
        await ws.accept()
        self.active[user_id].append(ws)
        logger.info("Hub: user %s connected (%d sockets)", user_id, len(self.active[user_id]))

    def disconnect(self, ws: WebSocket, user_id: str):
        sockets = self.active.get(user_id, [])
        if ws in sockets:
            sockets.remove(ws)
        if not sockets:
            self.active.pop(user_id, None)
        logger.info("Hub: user %s disconnected", user_id)

    def is_connected(self, user_id: str) -> bool:
        return bool(self.active.get(user_id))

    def connection_count(self) -> int:
        return sum(len(sockets) for sockets in self.active.values())

    async def push(self, user_id: str, payload: dict) -> int:
        """Send a payload to every socket of the user; returns how many received it."""
        delivered = 0
        for ws in list(self.active.get(user_id, [])):
            try:
                await ws.send_json(payload)
                delivered += 1
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.warning("Hub: dropping socket of %s: %s", user_id, e)
                self.disconnect(ws, user_id)
        return delivered

    async def broadcast(self, payload: dict) -> int:
        delivered = 0
        for user_id in list(self.active):
            delivered += await self.push(user_id, payload)
        return delivered


hub = NotificationHub()
