"""
Notification builders shared by the handler modules.
"""
from datetime import datetime, timezone
from typing import Optional

from bookon_relay.models.booking import Booking
from bookon_relay.schemas.notifications import Notification, NotificationKind


def _amount(booking: Booking) -> Optional[float]:
    return float(booking.total_amount) if booking.total_amount is not None else None


def payment_update(booking: Booking, payment_status: str) -> list[Notification]:
    """payment_update to the booking's owner plus its venue room."""
    timestamp = datetime.now(timezone.utc).isoformat()
    notifications = [
        Notification.to_user(booking.user_id, NotificationKind.PAYMENT_UPDATE, {
            "booking_id": str(booking.id),
            "status": payment_status,
            "amount": _amount(booking),
            "timestamp": timestamp,
        }),
    ]
    if booking.venue_id:
        notifications.append(
            Notification.to_room(booking.venue_id, NotificationKind.PAYMENT_UPDATE, {
                "booking_id": str(booking.id),
                "payment_status": payment_status,
                "booking_status": booking.status,
                "timestamp": timestamp,
            })
        )
    return notifications


def booking_update(
    booking_id: str,
    user_id: Optional[str],
    venue_id: Optional[str],
    data: dict,
) -> list[Notification]:
    """booking_update to the owner (full data) and the venue room (status summary)."""
    timestamp = datetime.now(timezone.utc).isoformat()
    notifications = []
    if user_id:
        notifications.append(
            Notification.to_user(user_id, NotificationKind.BOOKING_UPDATE, {
                **data,
                "booking_id": booking_id,
                "timestamp": timestamp,
            })
        )
    if venue_id:
        notifications.append(
            Notification.to_room(venue_id, NotificationKind.BOOKING_UPDATE, {
                "booking_id": booking_id,
                "status": data.get("status"),
                "timestamp": timestamp,
            })
        )
    return notifications
