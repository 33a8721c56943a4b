# =======================================================================================
# gatepass/services/connection_manager.py - Live Notification Channel
# =======================================================================================
"""
WebSocket connection registry for live pass updates.

Sockets subscribe to rooms (``user:<id>``, ``role:<role>``,
``department:<dept>:<role>``). Delivery is best-effort: the persisted
notification inbox is the authoritative copy and is replayed on ``join``.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Set

from fastapi import WebSocket

from ..utils.timeutils import utcnow
from .notification_service import LiveEvent

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class LiveConnection:
    """One connected client socket."""
    websocket: WebSocket
    user_id: int
    role: str
    rooms: Set[str] = field(default_factory=set)
    connected_at: datetime = field(default_factory=utcnow)


class ConnectionManager:
    """Tracks connected sockets per room and pushes events to them."""

    def __init__(self):
        # room -> connections
        self._rooms: Dict[str, Set[LiveConnection]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, user_id: int, role: str) -> LiveConnection:
        await websocket.accept()
        connection = LiveConnection(websocket=websocket, user_id=user_id, role=role)
        logger.info("Live channel connected: user %s (%s)", user_id, role)
        return connection

    async def join(self, connection: LiveConnection, room: str) -> None:
        async with self._lock:
            self._rooms.setdefault(room, set()).add(connection)
            connection.rooms.add(room)

    async def disconnect(self, connection: LiveConnection) -> None:
        async with self._lock:
            for room in list(connection.rooms):
                members = self._rooms.get(room)
                if members is None:
                    continue
                members.discard(connection)
                if not members:
                    del self._rooms[room]
            connection.rooms.clear()
        logger.info("Live channel disconnected: user %s", connection.user_id)

    def connection_count(self, room: str) -> int:
        return len(self._rooms.get(room, ()))

    async def send(self, connection: LiveConnection, event: str, data: Dict[str, Any]) -> bool:
        try:
            await connection.websocket.send_json({
                "event": event,
                "data": data,
                "timestamp": utcnow().isoformat(),
            })
            return True
        except Exception as e:
            logger.warning("Live delivery to user %s failed: %s", connection.user_id, e)
            await self.disconnect(connection)
            return False

    async def send_to_room(self, room: str, event: str, data: Dict[str, Any]) -> int:
        """Send to every socket in ``room``; returns how many received it."""
        async with self._lock:
            members: List[LiveConnection] = list(self._rooms.get(room, ()))
        delivered = 0
        for connection in members:
            if await self.send(connection, event, data):
                delivered += 1
        return delivered

    async def deliver(self, events: Iterable[LiveEvent]) -> int:
        """Push committed events in order."""
        delivered = 0
        for live_event in events:
            delivered += await self.send_to_room(live_event.room, live_event.event, live_event.data)
        return delivered


# Global instance shared by the API routes and the expiry worker
connection_manager = ConnectionManager()
