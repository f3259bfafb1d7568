"""
Narrow mutation primitives over the business tables.

Every write is an idempotent "set" - replaying the same event leaves the
same state. None of these commit; the dispatcher commits once per event so
business mutations and the outcome transition land together.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bookon_relay.models.booking import Booking
from bookon_relay.models.user import User

logger = logging.getLogger(__name__)


def _parse_uuid(value) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, AttributeError, TypeError):
        return None


async def get_booking(db: AsyncSession, booking_id) -> Optional[Booking]:
    booking_uuid = _parse_uuid(booking_id)
    if booking_uuid is None:
        return None
    result = await db.execute(
        select(Booking)
        .where(Booking.id == booking_uuid)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_booking_by_payment_intent(db: AsyncSession, payment_intent_id: str) -> Optional[Booking]:
    result = await db.execute(
        select(Booking)
        .where(Booking.payment_intent_id == payment_intent_id)
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def set_booking_payment_state(
    db: AsyncSession,
    payment_intent_id: str,
    status: Optional[str],
    payment_status: str,
) -> Optional[Booking]:
    """
    Set status/payment_status on the booking holding this payment intent.
    Returns the booking (refreshed) or None when no booking matches.
    """
    booking = await get_booking_by_payment_intent(db, payment_intent_id)
    if booking is None:
        logger.warning("No booking for payment intent %s", payment_intent_id)
        return None
    _apply_payment_state(booking, status, payment_status)
    await db.flush()
    return booking


async def set_booking_payment_state_by_id(
    db: AsyncSession,
    booking_id,
    payment_status: str,
    status: Optional[str] = None,
) -> Optional[Booking]:
    """Same as set_booking_payment_state, addressed by booking id."""
    booking = await get_booking(db, booking_id)
    if booking is None:
        logger.warning("Booking %s not found", str(booking_id)[:8])
        return None
    _apply_payment_state(booking, status, payment_status)
    await db.flush()
    return booking


def _apply_payment_state(booking: Booking, status: Optional[str], payment_status: str) -> None:
    if status is not None:
        booking.status = status
    booking.payment_status = payment_status
    booking.updated_at = datetime.now(timezone.utc)


async def link_payment_customer(db: AsyncSession, email: str, customer_id: str) -> bool:
    """Attach a payment-provider customer id to the user with this email."""
    if not email or not customer_id:
        return False
    result = await db.execute(
        update(User)
        .where(User.email == email)
        .values(stripe_customer_id=customer_id, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        logger.info("No user with email for customer %s", customer_id)
        return False
    return True


async def touch_payment_customer(db: AsyncSession, customer_id: str) -> bool:
    """Bump updated_at on the user linked to this payment-provider customer."""
    if not customer_id:
        return False
    result = await db.execute(
        update(User)
        .where(User.stripe_customer_id == customer_id)
        .values(updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


async def get_active_user(db: AsyncSession, user_id) -> Optional[User]:
    user_uuid = _parse_uuid(user_id)
    if user_uuid is None:
        return None
    user = await db.get(User, user_uuid)
    if user is None or not user.is_active:
        return None
    return user
