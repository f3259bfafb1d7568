"""
Admin event endpoints - query, stats, export and manual re-drive of the event ledger,
plus realtime introspection, venue system alerts and maintenance broadcasts.
All endpoints require an admin JWT.
"""
import logging
import math
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from bookon_relay.api.admin_auth import get_current_admin
from bookon_relay.config import get_settings
from bookon_relay.database import get_db
from bookon_relay.models.user import User
from bookon_relay.models.webhook_event import EventOutcome, SourceSystem, WebhookEvent
from bookon_relay.schemas.api_responses import (
    EventDetail,
    EventListResponse,
    EventStatsResponse,
    EventSummary,
    MaintenanceNoticeRequest,
    MaintenanceNoticeResponse,
    RealtimeStatsResponse,
    RetryResponse,
    RoomAlertRequest,
    RoomAlertResponse,
)
from bookon_relay.schemas.notifications import Notification, NotificationKind
from bookon_relay.services import event_store

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/admin", tags=["admin"])


def _filters(
    source_system: Optional[str],
    event_type: Optional[str],
    outcome: Optional[str],
    received_after: Optional[datetime],
    received_before: Optional[datetime],
    exhausted_only: bool,
) -> event_store.EventFilters:
    if outcome and outcome not in {o.value for o in EventOutcome}:
        raise HTTPException(status_code=400, detail=f"Unknown outcome: {outcome}")
    if source_system and source_system not in SourceSystem.ALL:
        raise HTTPException(status_code=400, detail=f"Unknown source system: {source_system}")
    return event_store.EventFilters(
        source_system=source_system,
        event_type=event_type,
        outcome=outcome,
        received_after=received_after,
        received_before=received_before,
        exhausted_only=exhausted_only,
    )


def _summary(event: WebhookEvent) -> EventSummary:
    return EventSummary(
        id=str(event.id),
        source_system=event.source_system,
        event_type=event.event_type,
        external_id=event.external_id,
        outcome=event.outcome,
        failure_reason=event.failure_reason,
        retry_count=event.retry_count,
        received_at=event.received_at,
        processed_at=event.processed_at,
    )


@router.get("/events", response_model=EventListResponse)
async def list_events(
    source_system: Optional[str] = None,
    event_type: Optional[str] = None,
    outcome: Optional[str] = None,
    received_after: Optional[datetime] = None,
    received_before: Optional[datetime] = None,
    exhausted_only: bool = False,
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin),
):
    """List recorded events, newest first."""
    filters = _filters(source_system, event_type, outcome, received_after, received_before, exhausted_only)
    events, total = await event_store.query_events(
        db, filters, page=page, per_page=per_page,
        max_retry_count=get_settings().retry_max_attempts,
    )
    return EventListResponse(
        events=[_summary(e) for e in events],
        total=total,
        page=page,
        pages=math.ceil(total / per_page) if total else 0,
    )


@router.get("/events/stats", response_model=EventStatsResponse)
async def get_event_stats(
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin),
):
    stats = await event_store.event_stats(db, get_settings().retry_max_attempts)
    return EventStatsResponse(**stats)


@router.get("/events/export")
async def export_events(
    source_system: Optional[str] = None,
    event_type: Optional[str] = None,
    outcome: Optional[str] = None,
    received_after: Optional[datetime] = None,
    received_before: Optional[datetime] = None,
    exhausted_only: bool = False,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin),
):
    """Export matching events as CSV (capped at EXPORT_MAX_ROWS)."""
    settings = get_settings()
    filters = _filters(source_system, event_type, outcome, received_after, received_before, exhausted_only)
    content = await event_store.export_events_csv(
        db, filters,
        max_rows=settings.export_max_rows,
        max_retry_count=settings.retry_max_attempts,
    )
    return StreamingResponse(
        iter([content]),
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=webhook_events.csv"},
    )


@router.get("/events/{event_id}", response_model=EventDetail)
async def get_event_detail(
    event_id: str,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin),
):
    event = await event_store.get_event(db, event_id)
    if event is None:
        raise HTTPException(status_code=404, detail="Event not found")
    ceiling = get_settings().retry_max_attempts
    return EventDetail(
        **event.to_dict(),
        exhausted=event.outcome == EventOutcome.FAILED.value and event.retry_count >= ceiling,
    )


@router.post("/events/{event_id}/retry", response_model=RetryResponse)
async def retry_event(
    event_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(get_current_admin),
):
    """
    Operator re-drive of a failed event, including one at the retry ceiling.
    Processed events are rejected; pending events are already in flight.
    """
    event = await event_store.get_event(db, event_id)
    if event is None:
        raise HTTPException(status_code=404, detail="Event not found")
    if event.outcome == EventOutcome.PROCESSED.value:
        raise HTTPException(status_code=409, detail="Event already processed")
    if event.outcome != EventOutcome.FAILED.value:
        raise HTTPException(status_code=409, detail="Event is not in a failed state")

    logger.info(
        "Manual retry requested by %s", str(admin.id)[:8],
        extra={"event_id": str(event.id)},
    )
    result = await request.app.state.dispatcher.dispatch(db, event)
    return RetryResponse(
        event_id=result.event_id,
        outcome=result.outcome,
        retry_count=result.retry_count,
        notifications=len(result.notifications),
    )


@router.get("/realtime", response_model=RealtimeStatsResponse)
async def realtime_stats(
    request: Request,
    admin: User = Depends(get_current_admin),
):
    stats = request.app.state.connection_manager.connection_stats()
    delivery = request.app.state.delivery_queue
    return RealtimeStatsResponse(
        **stats,
        delivery_queue_depth=delivery.depth,
        delivery_dropped=delivery.dropped,
    )


@router.post("/rooms/{room_id}/alerts", response_model=RoomAlertResponse)
async def send_room_alert(
    room_id: str,
    payload: RoomAlertRequest,
    request: Request,
    admin: User = Depends(get_current_admin),
):
    """Broadcast a system_alert to everyone in a venue room."""
    notification = Notification.to_room(room_id, NotificationKind.SYSTEM_ALERT, {
        **payload.data,
        "message": payload.message,
        "priority": payload.priority,
    })
    queued = request.app.state.delivery_queue.publish(notification)
    return RoomAlertResponse(room_id=room_id, notification_id=notification.id, queued=queued)


@router.post("/maintenance-notices", response_model=MaintenanceNoticeResponse)
async def send_maintenance_notice(
    payload: MaintenanceNoticeRequest,
    request: Request,
    admin: User = Depends(get_current_admin),
):
    """Broadcast a maintenance_notification to every open connection."""
    data = {"message": payload.message}
    if payload.scheduled_at is not None:
        data["scheduled_at"] = payload.scheduled_at.isoformat()
    notification = Notification.to_all(NotificationKind.MAINTENANCE_NOTICE, data)
    queued = request.app.state.delivery_queue.publish(notification)
    logger.info("Maintenance notice %s queued by %s", notification.id[:8], str(admin.id)[:8])
    return MaintenanceNoticeResponse(
        notification_id=notification.id,
        queued=queued,
        connections=request.app.state.connection_manager.connection_stats()["connections"],
    )
