"""
API response schemas for the webhook and admin endpoints.
"""
from datetime import datetime
from typing import Any, Optional
from pydantic import BaseModel, Field


class WebhookAck(BaseModel):
    received: bool = True
    event_id: Optional[str] = None
    duplicate: bool = False
    outcome: Optional[str] = None


class EventSummary(BaseModel):
    id: str
    source_system: str
    event_type: str
    external_id: Optional[str] = None
    outcome: str
    failure_reason: Optional[str] = None
    retry_count: int = 0
    received_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None


class EventDetail(EventSummary):
    payload: dict[str, Any] = Field(default_factory=dict)
    payload_hash: Optional[str] = None
    next_retry_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    correlation_id: Optional[str] = None
    exhausted: bool = False


class EventListResponse(BaseModel):
    events: list[EventSummary]
    total: int
    page: int
    pages: int


class EventStatsResponse(BaseModel):
    total: int
    by_outcome: dict[str, int]
    by_source: dict[str, int]
    exhausted: int


class RetryResponse(BaseModel):
    event_id: str
    outcome: str
    retry_count: int
    notifications: int = 0


class RoomAlertRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=2000)
    priority: str = Field("medium", pattern="^(low|medium|high|urgent)$")
    data: dict[str, Any] = Field(default_factory=dict)


class RoomAlertResponse(BaseModel):
    room_id: str
    notification_id: str
    queued: bool


class MaintenanceNoticeRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=2000)
    scheduled_at: Optional[datetime] = None


class MaintenanceNoticeResponse(BaseModel):
    notification_id: str
    queued: bool
    connections: int


class RealtimeStatsResponse(BaseModel):
    connections: int
    authenticated_users: int
    rooms: dict[str, int]
    delivery_queue_depth: int = 0
    delivery_dropped: int = 0
