"""
Notification - the ephemeral message a handler asks the fan-out engine to deliver.
Never persisted; if nobody eligible is connected it is dropped.
"""
import uuid
from datetime import datetime, timezone
from typing import Any, Literal
from pydantic import BaseModel, Field


class NotificationKind:
    BOOKING_UPDATE = "booking_update"
    PAYMENT_UPDATE = "payment_update"
    SYSTEM_ALERT = "system_alert"
    MAINTENANCE_NOTICE = "maintenance_notification"
    SERVER_RESTART = "server_restart"


class Notification(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    address_type: Literal["user", "room", "all"]
    address_id: str
    kind: str
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def to_user(cls, user_id, kind: str, data: dict) -> "Notification":
        return cls(address_type="user", address_id=str(user_id), kind=kind, data=data)

    @classmethod
    def to_room(cls, room_id, kind: str, data: dict) -> "Notification":
        return cls(address_type="room", address_id=str(room_id), kind=kind, data=data)

    @classmethod
    def to_all(cls, kind: str, data: dict) -> "Notification":
        """Every open connection, authenticated or not."""
        return cls(address_type="all", address_id="*", kind=kind, data=data)

    def wire_data(self) -> dict:
        """Body of the outbound "notification" websocket frame."""
        return {
            "id": self.id,
            "kind": self.kind,
            "data": self.data,
            "created_at": self.created_at.isoformat(),
        }
