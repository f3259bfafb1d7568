"""
Mapped subset of the platform's bookings table - only the payment fields the relay mutates.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, Numeric, ForeignKey
from sqlalchemy.dialects.postgresql import UUID
from bookon_relay.database import Base


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    venue_id = Column(String(64), nullable=True, index=True)
    payment_intent_id = Column(String(255), nullable=True, index=True)

    # pending, confirmed, cancelled, completed
    status = Column(String(20), nullable=False, default="pending")
    # pending, paid, failed, refunded
    payment_status = Column(String(20), nullable=False, default="pending")
    total_amount = Column(Numeric(10, 2), nullable=True)

    updated_at = Column(
        DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
