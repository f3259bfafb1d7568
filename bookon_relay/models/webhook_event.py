"""
Webhook event ledger - every authenticated inbound event is recorded before processing.
The row is the unit of idempotency, retry and operator audit.
"""
import enum
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, Text, Integer, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from bookon_relay.database import Base


class EventOutcome(str, enum.Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class SourceSystem:
    """Inbound source identifiers."""
    PAYMENT_PROVIDER = "payment-provider"
    EXTERNAL = "external"

    ALL = (PAYMENT_PROVIDER, EXTERNAL)


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    source_system = Column(String(50), nullable=False, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    external_id = Column(String(255), nullable=True)
    payload = Column(JSONB, nullable=False, default=dict)
    payload_hash = Column(String(64), nullable=True)

    outcome = Column(
        String(20), nullable=False,
        default=EventOutcome.PENDING.value, server_default=EventOutcome.PENDING.value,
    )
    failure_reason = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0, server_default="0")
    next_retry_at = Column(DateTime(timezone=True), nullable=True)

    received_at = Column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )
    processed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(
        DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
    correlation_id = Column(String(64), nullable=True, index=True)

    __table_args__ = (
        # At most one row per idempotency key (NULL keys are not constrained)
        Index("uq_webhook_events_source_external_id", "source_system", "external_id", unique=True),
        Index("ix_webhook_events_retry_scan", "outcome", "received_at"),
    )

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "source_system": self.source_system,
            "event_type": self.event_type,
            "external_id": self.external_id,
            "payload": self.payload or {},
            "payload_hash": self.payload_hash,
            "outcome": self.outcome,
            "failure_reason": self.failure_reason,
            "retry_count": self.retry_count,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "received_at": self.received_at.isoformat() if self.received_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "correlation_id": self.correlation_id,
        }
