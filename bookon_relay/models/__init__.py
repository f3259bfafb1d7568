"""
Database models - import all models here so Alembic can discover them.
"""
from bookon_relay.models.webhook_event import WebhookEvent, EventOutcome, SourceSystem
from bookon_relay.models.user import User
from bookon_relay.models.booking import Booking

__all__ = [
    "WebhookEvent",
    "EventOutcome",
    "SourceSystem",
    "User",
    "Booking",
]
