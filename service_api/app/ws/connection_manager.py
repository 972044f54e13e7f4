"""
Chat socket connection manager for the API service.
"""

import asyncio
import json
import uuid
from typing import Dict, Any, Optional, Set, TYPE_CHECKING
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from fastapi.encoders import jsonable_encoder

from shared.logging import get_logger
from shared.errors import RealtimeError

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


@dataclass
class ChatConnection:
    """Chat socket connection data."""
    connection_id: str
    websocket: Any  # WebSocket object
    user_id: int
    rooms: Set[str] = field(default_factory=set)
    last_heartbeat: datetime = field(default_factory=datetime.now)
    created_at: datetime = field(default_factory=datetime.now)


class ChatConnectionManager:
    """Tracks chat sockets, their users and the rooms they joined."""

    def __init__(
        self,
        max_connections: int = 5000,
        heartbeat_timeout: int = 90,
        *,
        check_interval: float = 10.0,
        metrics: Optional["MetricsCollector"] = None
    ):
        self.max_connections = max_connections
        self.heartbeat_timeout = heartbeat_timeout
        self.check_interval = check_interval
        self.metrics = metrics
        self.logger = get_logger("api.ws.connection_manager")

        self.connections: Dict[str, ChatConnection] = {}
        self.user_connections: Dict[int, Set[str]] = {}  # user_id -> connection_ids
        self.room_members: Dict[str, Set[str]] = {}  # room -> connection_ids

        self._heartbeat_task: Optional[asyncio.Task] = None
        self.running = False

    async def start(self):
        """Start the stale connection monitor."""
        self.running = True
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        self.logger.info("Chat connection manager started")

    async def stop(self):
        """Stop the monitor and close every connection."""
        self.running = False
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

        for connection_id in list(self.connections):
            await self.remove_connection(connection_id)

        self.logger.info("Chat connection manager stopped")

    async def add_connection(self, websocket: Any, user_id: int) -> str:
        """Register an accepted socket for ``user_id``."""
        if len(self.connections) >= self.max_connections:
            raise RealtimeError(
                f"Maximum connections ({self.max_connections}) exceeded",
                {"max_connections": self.max_connections}
            )

        connection_id = str(uuid.uuid4())
        self.connections[connection_id] = ChatConnection(
            connection_id=connection_id,
            websocket=websocket,
            user_id=user_id
        )
        self.user_connections.setdefault(user_id, set()).add(connection_id)
        self._update_connections_gauge()

        self.logger.info(
            "Chat connection added",
            connection_id=connection_id,
            user_id=user_id,
            total_connections=len(self.connections)
        )
        return connection_id

    async def remove_connection(self, connection_id: str):
        """Forget a connection and close its socket."""
        connection = self.connections.pop(connection_id, None)
        if connection is None:
            return

        user_set = self.user_connections.get(connection.user_id)
        if user_set is not None:
            user_set.discard(connection_id)
            if not user_set:
                del self.user_connections[connection.user_id]

        for room in connection.rooms:
            members = self.room_members.get(room)
            if members is not None:
                members.discard(connection_id)
                if not members:
                    del self.room_members[room]

        try:
            await connection.websocket.close()
        except Exception as e:
            # already closed by the peer
            self.logger.debug("Socket close failed", connection_id=connection_id, error=str(e))

        self._update_connections_gauge()
        self.logger.info(
            "Chat connection removed",
            connection_id=connection_id,
            total_connections=len(self.connections)
        )

    def join_room(self, connection_id: str, room: str) -> bool:
        """Add the connection to ``room``. False if it was already a member."""
        connection = self.connections.get(connection_id)
        if connection is None or room in connection.rooms:
            return False

        connection.rooms.add(room)
        self.room_members.setdefault(room, set()).add(connection_id)
        self.logger.info(
            "Connection joined chat",
            connection_id=connection_id,
            room=room,
            member_count=len(self.room_members[room])
        )
        return True

    def leave_room(self, connection_id: str, room: str) -> bool:
        """Remove the connection from ``room``. False if it was not a member."""
        connection = self.connections.get(connection_id)
        if connection is None or room not in connection.rooms:
            return False

        connection.rooms.discard(room)
        members = self.room_members.get(room)
        if members is not None:
            members.discard(connection_id)
            if not members:
                del self.room_members[room]

        self.logger.info("Connection left chat", connection_id=connection_id, room=room)
        return True

    async def send_event(self, connection_id: str, frame: Dict[str, Any]) -> bool:
        """Send one frame to a connection. Failed sockets are dropped."""
        connection = self.connections.get(connection_id)
        if connection is None:
            return False

        try:
            await connection.websocket.send_text(json.dumps(jsonable_encoder(frame)))
            return True
        except Exception as e:
            self.logger.error(
                "Failed to send frame to connection",
                connection_id=connection_id,
                error=str(e)
            )
            await self.remove_connection(connection_id)
            return False

    async def broadcast_to_room(
        self,
        room: str,
        frame: Dict[str, Any],
        exclude_connections: Optional[Set[str]] = None
    ) -> int:
        """Send ``frame`` to every member of ``room``."""
        members = self.room_members.get(room, set())
        if exclude_connections:
            members = members - exclude_connections

        sent_count = 0
        for connection_id in list(members):
            if await self.send_event(connection_id, frame):
                sent_count += 1

        self.logger.debug("Broadcast frame to chat", room=room, sent_count=sent_count)
        return sent_count

    def update_heartbeat(self, connection_id: str):
        if connection_id in self.connections:
            self.connections[connection_id].last_heartbeat = datetime.now()

    async def close_stale_connections(self) -> int:
        """Close connections with no heartbeat within the timeout."""
        threshold = datetime.now() - timedelta(seconds=self.heartbeat_timeout)
        stale = [
            connection for connection in self.connections.values()
            if connection.last_heartbeat < threshold
        ]

        for connection in stale:
            self.logger.info(
                "Removing stale connection",
                connection_id=connection.connection_id,
                last_heartbeat=connection.last_heartbeat.isoformat()
            )
            await self.remove_connection(connection.connection_id)
        return len(stale)

    async def _heartbeat_loop(self):
        while self.running:
            try:
                await self.close_stale_connections()
                await asyncio.sleep(self.check_interval)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error("Error in heartbeat loop", error=str(e))
                await asyncio.sleep(5)

    def get_connection_stats(self) -> Dict[str, Any]:
        return {
            "total_connections": len(self.connections),
            "max_connections": self.max_connections,
            "user_connections": len(self.user_connections),
            "rooms": len(self.room_members),
        }

    def get_connection(self, connection_id: str) -> Optional[ChatConnection]:
        return self.connections.get(connection_id)

    def get_room_members(self, room: str) -> Set[str]:
        return self.room_members.get(room, set()).copy()

    def _update_connections_gauge(self):
        if self.metrics:
            self.metrics.set_gauge("chat_connections_active", len(self.connections))
