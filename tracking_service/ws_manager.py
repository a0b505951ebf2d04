# tracking_service/ws_manager.py
import logging
import uuid
from typing import Any, Dict, Optional, Set

from tracking_service.schemas import Identity

logger = logging.getLogger("tracking-service.ws")
logger.setLevel(logging.INFO)


def delivery_room(delivery_id: str) -> str:
    # same prefix as personal_room("delivery", ...): delivery ids and driver ids must not collide
    return f"delivery_{delivery_id}"


def personal_room(role: str, subject_id: str) -> str:
    return f"{role}_{subject_id}"


class Connection:
    """
    One live socket plus the identity attached to it at handshake.
    Anything with an async send_json(dict) works as the socket.
    """

    def __init__(self, websocket: Any, identity: Identity, connection_id: Optional[str] = None):
        self.id = connection_id or str(uuid.uuid4())
        self.websocket = websocket
        self.identity = identity

    async def send(self, event_type: str, data: Any):
        await self.websocket.send_json({"type": event_type, "data": data})

    def __repr__(self):
        return f"<Connection {self.id[:8]} {self.identity.role.value}:{self.identity.id or '-'}>"


class RoomRegistry:
    """
    In-process room membership and fan-out.

    Membership changes never await, so they are atomic with respect to the
    event loop. Broadcasts iterate over a snapshot of the room.
    """

    def __init__(self):
        self.connections: Dict[str, Connection] = {}
        self.rooms: Dict[str, Set[str]] = {}
        self.memberships: Dict[str, Set[str]] = {}

    def register(self, connection: Connection):
        self.connections[connection.id] = connection
        self.memberships.setdefault(connection.id, set())
        logger.info(f"[WS CONNECT] {connection!r}. Total clients: {len(self.connections)}")

    def unregister(self, connection: Connection):
        for room in self.memberships.pop(connection.id, set()):
            members = self.rooms.get(room)
            if members is None:
                continue
            members.discard(connection.id)
            if not members:
                del self.rooms[room]
        self.connections.pop(connection.id, None)
        logger.info(f"[WS DISCONNECT] {connection!r}. Total clients: {len(self.connections)}")

    def join(self, connection: Connection, room: str):
        if connection.id not in self.connections:
            self.register(connection)
        self.rooms.setdefault(room, set()).add(connection.id)
        self.memberships[connection.id].add(room)

    def leave(self, connection: Connection, room: str):
        members = self.rooms.get(room)
        if members is not None:
            members.discard(connection.id)
            if not members:
                del self.rooms[room]
        self.memberships.get(connection.id, set()).discard(room)

    def members(self, room: str) -> Set[str]:
        return set(self.rooms.get(room, set()))

    def rooms_of(self, connection: Connection) -> Set[str]:
        return set(self.memberships.get(connection.id, set()))

    async def send_to(self, connection: Connection, event_type: str, data: Any) -> bool:
        try:
            await connection.send(event_type, data)
            return True
        except Exception as e:
            logger.warning(f"[WS SEND ERROR] Removing {connection!r}: {e}")
            self.unregister(connection)
            return False

    async def broadcast(self, room: str, event_type: str, data: Any) -> int:
        """
        Send an event to every connection in a room.
        Does not raise on per-client errors; dead connections are dropped.
        Returns how many clients received it.
        """
        delivered = 0
        for connection_id in self.members(room):
            connection = self.connections.get(connection_id)
            if connection is None:
                continue
            if await self.send_to(connection, event_type, data):
                delivered += 1

        logger.info(f"[WS BROADCAST] Event '{event_type}' sent to {delivered} clients in {room}")
        return delivered
