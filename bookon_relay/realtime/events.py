"""
Websocket wire messages.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class EventType(str, Enum):
    CONNECTION_ACK = "connection_ack"
    AUTHENTICATED = "authenticated"
    AUTHENTICATION_FAILED = "authentication_failed"
    ROOM_JOINED = "room_joined"
    ROOM_JOIN_FAILED = "room_join_failed"
    ROOM_LEFT = "room_left"
    NOTIFICATION = "notification"
    HEARTBEAT = "heartbeat"
    ERROR = "error"


class InboundMessageType(str, Enum):
    AUTHENTICATE = "authenticate"
    JOIN_ROOM = "join_room"
    LEAVE_ROOM = "leave_room"
    PING = "ping"


class WebSocketEvent(BaseModel):
    type: EventType
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class InboundMessage(BaseModel):
    type: InboundMessageType
    token: Optional[str] = None
    room_id: Optional[str] = None
    data: Optional[dict[str, Any]] = None
