"""Realtime push to connected browser sessions.

One registry is created per application lifespan and injected where needed;
sockets are keyed by user id and a user may hold several at once.
"""

import asyncio
import logging
import uuid
from typing import Any, Dict, List, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """Tracks open WebSocket connections per user."""

    def __init__(self):
        self._connections: Dict[uuid.UUID, Set[WebSocket]] = {}
        self._lock = asyncio.Lock()

    async def add(self, user_id: uuid.UUID, websocket: WebSocket) -> None:
        async with self._lock:
            self._connections.setdefault(user_id, set()).add(websocket)
        logger.info(f"Realtime session opened for user {user_id}")

    async def remove(self, user_id: uuid.UUID, websocket: WebSocket) -> None:
        async with self._lock:
            sockets = self._connections.get(user_id)
            if sockets is None:
                return
            sockets.discard(websocket)
            if not sockets:
                del self._connections[user_id]
        logger.info(f"Realtime session closed for user {user_id}")

    def connections(self, user_id: uuid.UUID) -> List[WebSocket]:
        return list(self._connections.get(user_id, ()))

    def is_connected(self, user_id: uuid.UUID) -> bool:
        return bool(self._connections.get(user_id))

    async def push_to_user(self, user_id: uuid.UUID, payload: Dict[str, Any]) -> int:
        """Send to every open socket of the user; returns how many got it.

        No open socket means the push is dropped.  Sockets that fail are
        unregistered.
        """
        delivered = 0
        for websocket in self.connections(user_id):
            try:
                await websocket.send_json(payload)
                delivered += 1
            except Exception as e:
                logger.warning(f"Dropping dead socket for user {user_id}: {e}")
                await self.remove(user_id, websocket)
        return delivered

    async def broadcast(self, payload: Dict[str, Any]) -> int:
        delivered = 0
        for user_id in list(self._connections):
            delivered += await self.push_to_user(user_id, payload)
        return delivered

    async def close_all(self) -> None:
        async with self._lock:
            sockets = [ws for group in self._connections.values() for ws in group]
            self._connections.clear()
        for websocket in sockets:
            try:
                await websocket.close()
            except Exception as e:
                logger.debug(f"Socket already closed: {e}")
