"""
Payment provider (Stripe) event handlers.
The recorded payload is the event's data.object.
"""
import logging

from bookon_relay.schemas.notifications import Notification
from bookon_relay.services import business_store
from bookon_relay.services.dispatcher import HandlerContext
from bookon_relay.services.handlers.common import payment_update

logger = logging.getLogger(__name__)

PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"
CUSTOMER_CREATED = "customer.created"
CUSTOMER_UPDATED = "customer.updated"


def _object_id(ctx: HandlerContext) -> str:
    object_id = ctx.payload.get("id")
    if not object_id:
        raise ValueError(f"{ctx.event_type} payload has no object id")
    return object_id


async def handle_payment_intent_succeeded(ctx: HandlerContext) -> list[Notification]:
    intent_id = _object_id(ctx)
    booking = await business_store.set_booking_payment_state(
        ctx.db, intent_id, status="confirmed", payment_status="paid",
    )
    if booking is None:
        return []
    logger.info("Booking %s confirmed by payment %s", str(booking.id)[:8], intent_id)
    return payment_update(booking, "paid")


async def handle_payment_intent_failed(ctx: HandlerContext) -> list[Notification]:
    intent_id = _object_id(ctx)
    booking = await business_store.set_booking_payment_state(
        ctx.db, intent_id, status="pending", payment_status="failed",
    )
    if booking is None:
        return []
    error = (ctx.payload.get("last_payment_error") or {}).get("message")
    logger.info("Payment %s failed for booking %s: %s", intent_id, str(booking.id)[:8], error)
    return payment_update(booking, "failed")


async def handle_customer_created(ctx: HandlerContext) -> list[Notification]:
    customer_id = _object_id(ctx)
    await business_store.link_payment_customer(ctx.db, ctx.payload.get("email"), customer_id)
    return []


async def handle_customer_updated(ctx: HandlerContext) -> list[Notification]:
    await business_store.touch_payment_customer(ctx.db, _object_id(ctx))
    return []


HANDLERS = {
    PAYMENT_INTENT_SUCCEEDED: handle_payment_intent_succeeded,
    PAYMENT_INTENT_FAILED: handle_payment_intent_failed,
    CUSTOMER_CREATED: handle_customer_created,
    CUSTOMER_UPDATED: handle_customer_updated,
}
