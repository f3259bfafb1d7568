"""
Generic external integration event handlers.
Payload shape: {"event": "<type>", "data": {...}, "id": "<optional delivery id>"};
the recorded payload is the data object.
"""
import logging

from bookon_relay.schemas.notifications import Notification
from bookon_relay.services import business_store
from bookon_relay.services.dispatcher import HandlerContext
from bookon_relay.services.handlers.common import payment_update, booking_update

logger = logging.getLogger(__name__)

PAYMENT_COMPLETED = "payment.completed"
BOOKING_CREATED = "booking.created"
BOOKING_UPDATED = "booking.updated"


def _booking_id(ctx: HandlerContext) -> str:
    booking_id = ctx.payload.get("bookingId") or ctx.payload.get("booking_id")
    if not booking_id:
        raise ValueError(f"{ctx.event_type} payload has no booking id")
    return str(booking_id)


async def handle_payment_completed(ctx: HandlerContext) -> list[Notification]:
    booking = await business_store.set_booking_payment_state_by_id(
        ctx.db, _booking_id(ctx), payment_status="paid",
    )
    if booking is None:
        return []
    return payment_update(booking, "paid")


async def handle_booking_changed(ctx: HandlerContext) -> list[Notification]:
    """booking.created / booking.updated - notify only, the main API owns the write."""
    booking_id = _booking_id(ctx)
    booking = await business_store.get_booking(ctx.db, booking_id)
    changes = ctx.payload.get("changes") or {}

    if booking is not None:
        data = {"status": booking.status, "payment_status": booking.payment_status, "changes": changes}
        return booking_update(str(booking.id), str(booking.user_id), booking.venue_id, data)

    # Unknown locally - address whoever the payload names
    user_id = ctx.payload.get("userId") or ctx.payload.get("user_id")
    venue_id = ctx.payload.get("venueId") or ctx.payload.get("venue_id")
    data = {"status": ctx.payload.get("status"), "changes": changes}
    return booking_update(booking_id, user_id, venue_id, data)


HANDLERS = {
    PAYMENT_COMPLETED: handle_payment_completed,
    BOOKING_CREATED: handle_booking_changed,
    BOOKING_UPDATED: handle_booking_changed,
}
