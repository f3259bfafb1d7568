"""
Connection registry and notification fan-out.

Registry:
  connection_id -> Connection (transport, identity, rooms)
  identity -> connection_id (last authenticated connection wins)
  room_id -> set[connection_id]

Registry mutations are synchronous blocks, so each one is atomic on the event
loop. Flows that await a collaborator (credential check, room authorization)
are serialized per connection and re-validate the connection's binding before
writing. Sends never happen inside a mutation: targets are snapshotted first,
then written to, and liveness is re-checked per connection at send time.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from starlette.websockets import WebSocketState

from bookon_relay.realtime.events import EventType, WebSocketEvent
from bookon_relay.schemas.notifications import Notification
from bookon_relay.utils.locks import KeyedLock

logger = logging.getLogger(__name__)

SEND_TIMEOUT_SECONDS = 5.0

TokenAuthenticator = Callable[[str], Awaitable[Optional[str]]]
RoomAuthorizer = Callable[[str, str], Awaitable[bool]]


@dataclass
class Connection:
    connection_id: str
    transport: Any
    identity: Optional[str] = None
    rooms: set[str] = field(default_factory=set)
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ConnectionManager:
    def __init__(
        self,
        authenticate_token: TokenAuthenticator,
        authorize_room: RoomAuthorizer,
        send_timeout: float = SEND_TIMEOUT_SECONDS,
    ):
        self._authenticate_token = authenticate_token
        self._authorize_room = authorize_room
        self.send_timeout = send_timeout
        self._connections: dict[str, Connection] = {}
        self._identities: dict[str, str] = {}
        self._rooms: dict[str, set[str]] = {}
        self._connection_locks = KeyedLock("connection")

    # === Registration ===

    async def register(self, transport) -> str:
        """Track a newly accepted transport. Returns its connection id."""
        connection_id = uuid.uuid4().hex
        self._connections[connection_id] = Connection(connection_id=connection_id, transport=transport)
        logger.debug("Connection registered", extra={"connection_id": connection_id})
        return connection_id

    async def authenticate(self, connection_id: str, token: str) -> tuple[Optional[str], bool]:
        """
        Bind the token's identity to this connection.
        A previous connection for the same identity stays open but is no longer
        addressed by user deliveries.
        """
        async with self._connection_locks.hold(connection_id):
            if connection_id not in self._connections:
                return None, False

            try:
                identity = await self._authenticate_token(token)
            except Exception as e:
                logger.error(
                    "Credential check failed: %s", str(e),
                    extra={"connection_id": connection_id}, exc_info=True,
                )
                return None, False
            if not identity:
                logger.info("Authentication rejected", extra={"connection_id": connection_id})
                return None, False

            conn = self._connections.get(connection_id)
            if conn is None:
                # Disconnected while the credential check ran
                return None, False

            self._bind(conn, identity)
            logger.info(
                "Connection authenticated",
                extra={"connection_id": connection_id, "identity": identity},
            )
            return identity, True

    def _bind(self, conn: Connection, identity: str) -> None:
        if conn.identity and conn.identity != identity:
            # Re-authenticated as someone else: memberships were granted to the old identity
            if self._identities.get(conn.identity) == conn.connection_id:
                del self._identities[conn.identity]
            self._leave_all_rooms(conn)

        previous = self._identities.get(identity)
        if previous and previous != conn.connection_id:
            logger.info(
                "Identity moved to a new connection (previous %s left open)", previous[:8],
                extra={"connection_id": conn.connection_id, "identity": identity},
            )
        conn.identity = identity
        self._identities[identity] = conn.connection_id

    async def join_room(self, connection_id: str, room_id: str) -> bool:
        """Add the connection to a room if its identity is authorized for it."""
        async with self._connection_locks.hold(connection_id):
            conn = self._connections.get(connection_id)
            if conn is None or conn.identity is None:
                return False
            identity = conn.identity

            try:
                allowed = await self._authorize_room(identity, room_id)
            except Exception as e:
                logger.error(
                    "Room authorization failed: %s", str(e),
                    extra={"connection_id": connection_id, "room_id": room_id}, exc_info=True,
                )
                return False
            if not allowed:
                logger.info(
                    "Room access denied",
                    extra={"connection_id": connection_id, "identity": identity, "room_id": room_id},
                )
                return False

            conn = self._connections.get(connection_id)
            if conn is None or conn.identity != identity:
                return False

            conn.rooms.add(room_id)
            self._rooms.setdefault(room_id, set()).add(connection_id)
            logger.debug(
                "Joined room", extra={"connection_id": connection_id, "room_id": room_id},
            )
            return True

    async def leave_room(self, connection_id: str, room_id: str) -> bool:
        async with self._connection_locks.hold(connection_id):
            conn = self._connections.get(connection_id)
            if conn is None or room_id not in conn.rooms:
                return False
            conn.rooms.discard(room_id)
            self._discard_member(room_id, connection_id)
            return True

    async def disconnect(self, connection_id: str) -> None:
        """Forget a connection: its identity binding and every room membership."""
        conn = self._connections.pop(connection_id, None)
        if conn is None:
            return
        if conn.identity and self._identities.get(conn.identity) == connection_id:
            del self._identities[conn.identity]
        self._leave_all_rooms(conn)
        logger.debug(
            "Connection removed",
            extra={"connection_id": connection_id, "identity": conn.identity},
        )

    def _leave_all_rooms(self, conn: Connection) -> None:
        for room_id in conn.rooms:
            self._discard_member(room_id, conn.connection_id)
        conn.rooms = set()

    def _discard_member(self, room_id: str, connection_id: str) -> None:
        members = self._rooms.get(room_id)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self._rooms[room_id]

    # === Delivery ===

    async def deliver(self, notification: Notification) -> int:
        """Route a notification by its address. Returns connections written to."""
        if notification.address_type == "user":
            return await self.deliver_to_user(notification.address_id, notification)
        if notification.address_type == "all":
            return await self.broadcast_all(notification)
        return await self.deliver_to_room(notification.address_id, notification)

    async def deliver_to_user(self, identity: str, notification: Notification) -> int:
        connection_id = self._identities.get(identity)
        conn = self._connections.get(connection_id) if connection_id else None
        if conn is None:
            logger.debug("User not connected - dropping %s", notification.kind, extra={"identity": identity})
            return 0
        delivered = await self._send(conn, self._frame(notification))
        return 1 if delivered else 0

    async def deliver_to_room(self, room_id: str, notification: Notification) -> int:
        targets = [
            self._connections[cid]
            for cid in self._rooms.get(room_id, ())
            if cid in self._connections
        ]
        if not targets:
            logger.debug("Room empty - dropping %s", notification.kind, extra={"room_id": room_id})
            return 0
        frame = self._frame(notification)
        results = await asyncio.gather(*(self._send(conn, frame) for conn in targets))
        return sum(1 for ok in results if ok)

    async def broadcast_all(self, notification: Notification) -> int:
        """Maintenance and restart notices: every open connection, not only authenticated ones."""
        targets = list(self._connections.values())
        if not targets:
            return 0
        frame = self._frame(notification)
        results = await asyncio.gather(*(self._send(conn, frame) for conn in targets))
        delivered = sum(1 for ok in results if ok)
        logger.info("Broadcast %s to %d/%d connections", notification.kind, delivered, len(targets))
        return delivered

    async def send_event(self, connection_id: str, event_type: EventType, data: Optional[dict] = None) -> bool:
        """Send a protocol event (ack, join result, heartbeat) to one connection."""
        conn = self._connections.get(connection_id)
        if conn is None:
            return False
        event = WebSocketEvent(type=event_type, data=data or {})
        return await self._send(conn, event.model_dump(mode="json"))

    def _frame(self, notification: Notification) -> dict:
        return WebSocketEvent(
            type=EventType.NOTIFICATION, data=notification.wire_data(),
        ).model_dump(mode="json")

    async def _send(self, conn: Connection, message: dict) -> bool:
        """Write to one connection; a dead or failing transport is removed, never raised."""
        if self._connections.get(conn.connection_id) is not conn:
            return False
        if getattr(conn.transport, "client_state", None) != WebSocketState.CONNECTED:
            await self.disconnect(conn.connection_id)
            return False
        try:
            await asyncio.wait_for(conn.transport.send_json(message), timeout=self.send_timeout)
            return True
        except Exception as e:
            logger.warning(
                "Delivery failed, dropping connection: %s", str(e) or type(e).__name__,
                extra={"connection_id": conn.connection_id, "identity": conn.identity},
            )
            await self.disconnect(conn.connection_id)
            return False

    # === Introspection ===

    def identity_of(self, connection_id: str) -> Optional[str]:
        conn = self._connections.get(connection_id)
        return conn.identity if conn else None

    def rooms_of(self, connection_id: str) -> set[str]:
        conn = self._connections.get(connection_id)
        return set(conn.rooms) if conn else set()

    def connected_users_count(self) -> int:
        return len(self._identities)

    def connection_stats(self) -> dict:
        return {
            "connections": len(self._connections),
            "authenticated_users": len(self._identities),
            "rooms": {room_id: len(members) for room_id, members in self._rooms.items()},
        }
