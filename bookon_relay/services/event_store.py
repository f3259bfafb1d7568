"""
Event store - durable ledger of inbound events and their processing outcome.

State machine:
    pending -> processed
    pending -> failed -> failed ... -> processed
    failed stays failed once retry_count reaches the ceiling

A retry re-dispatches the failed row in place. A pending row whose attempt
never settled is picked up again once it is stale.

Idempotency: (source_system, external_id) is unique. Outcome transitions are
conditional updates (WHERE outcome != 'processed') so two concurrent paths
can never both win, and a processed row is never touched again.
"""
import csv
import io
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from sqlalchemy import select, update, func, and_, or_, desc, case, literal
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from bookon_relay.models.webhook_event import WebhookEvent, EventOutcome
from bookon_relay.utils.logging import get_correlation_id

logger = logging.getLogger(__name__)

# Backoff schedule between automatic retries (minutes)
RETRY_DELAYS_MINUTES = [1, 5, 15, 60, 240]

MAX_FAILURE_REASON_LENGTH = 2000

EXPORT_COLUMNS = [
    "id", "source_system", "event_type", "external_id", "outcome",
    "retry_count", "failure_reason", "received_at", "processed_at", "next_retry_at",
]

EventId = Union[str, uuid.UUID]


@dataclass
class EventFilters:
    source_system: Optional[str] = None
    event_type: Optional[str] = None
    outcome: Optional[str] = None
    received_after: Optional[datetime] = None
    received_before: Optional[datetime] = None
    exhausted_only: bool = False


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_uuid(event_id: EventId) -> uuid.UUID:
    if isinstance(event_id, uuid.UUID):
        return event_id
    return uuid.UUID(str(event_id))


def next_retry_at(retry_count: int, now: Optional[datetime] = None) -> datetime:
    """Earliest time a failed event becomes eligible for automatic retry."""
    delay_idx = min(max(retry_count - 1, 0), len(RETRY_DELAYS_MINUTES) - 1)
    return (now or _now()) + timedelta(minutes=RETRY_DELAYS_MINUTES[delay_idx])


async def find_by_key(
    db: AsyncSession,
    source_system: str,
    external_id: str,
) -> Optional[WebhookEvent]:
    result = await db.execute(
        select(WebhookEvent)
        .where(
            WebhookEvent.source_system == source_system,
            WebhookEvent.external_id == external_id,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_event(db: AsyncSession, event_id: EventId) -> Optional[WebhookEvent]:
    """Load an event, always reading the current row (not a stale identity-map copy)."""
    try:
        event_uuid = _as_uuid(event_id)
    except (ValueError, AttributeError):
        return None
    result = await db.execute(
        select(WebhookEvent)
        .where(WebhookEvent.id == event_uuid)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def record_event(
    db: AsyncSession,
    source_system: str,
    event_type: str,
    external_id: Optional[str],
    payload: dict,
    payload_hash: Optional[str] = None,
) -> tuple[WebhookEvent, bool]:
    """
    Insert a pending event and commit it.

    Returns (event, created). When a row with the same idempotency key
    already exists it is returned with created=False, whatever its outcome.
    """
    if external_id:
        existing = await find_by_key(db, source_system, external_id)
        if existing is not None:
            logger.info(
                "Duplicate delivery %s/%s (outcome=%s)",
                source_system, external_id, existing.outcome,
                extra={"event_id": str(existing.id), "source_system": source_system},
            )
            return existing, False

    event = WebhookEvent(
        source_system=source_system,
        event_type=event_type,
        external_id=external_id,
        payload=payload or {},
        payload_hash=payload_hash,
        outcome=EventOutcome.PENDING.value,
        retry_count=0,
        correlation_id=get_correlation_id(),
    )
    db.add(event)
    try:
        await db.commit()
    except IntegrityError:
        # Lost the insert race on the unique key - the winner's row is authoritative
        await db.rollback()
        existing = await find_by_key(db, source_system, external_id)
        if existing is None:
            raise
        logger.info(
            "Concurrent delivery %s/%s resolved to existing row",
            source_system, external_id,
            extra={"event_id": str(existing.id), "source_system": source_system},
        )
        return existing, False

    logger.info(
        "Recorded %s event %s",
        source_system, event_type,
        extra={"event_id": str(event.id), "source_system": source_system, "event_type": event_type},
    )
    return event, True


async def mark_processed(db: AsyncSession, event_id: EventId) -> bool:
    """
    Transition to processed unless already processed. Does not commit:
    the caller commits together with the handler's business mutations.
    Returns False if another path already processed the event.
    """
    now = _now()
    result = await db.execute(
        update(WebhookEvent)
        .where(
            WebhookEvent.id == _as_uuid(event_id),
            WebhookEvent.outcome != EventOutcome.PROCESSED.value,
        )
        .values(
            outcome=EventOutcome.PROCESSED.value,
            processed_at=now,
            failure_reason=None,
            next_retry_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _backoff_expression(now: datetime):
    """next_retry_at for the row's incremented retry_count, evaluated inside the UPDATE."""
    column_type = WebhookEvent.__table__.c.next_retry_at.type
    new_count = WebhookEvent.retry_count + 1
    whens = [
        (new_count <= position, literal(now + timedelta(minutes=minutes), column_type))
        for position, minutes in enumerate(RETRY_DELAYS_MINUTES[:-1], start=1)
    ]
    last = literal(now + timedelta(minutes=RETRY_DELAYS_MINUTES[-1]), column_type)
    return case(*whens, else_=last)


async def mark_failed(db: AsyncSession, event_id: EventId, reason: str) -> Optional[int]:
    """
    Record a failed attempt: outcome=failed, retry_count+1, next_retry_at per backoff.
    One UPDATE ... RETURNING, so the backoff always follows the count it writes.
    Does not commit. Returns the new retry_count, or None if the event is already processed.
    """
    now = _now()
    result = await db.execute(
        update(WebhookEvent)
        .where(
            WebhookEvent.id == _as_uuid(event_id),
            WebhookEvent.outcome != EventOutcome.PROCESSED.value,
        )
        .values(
            outcome=EventOutcome.FAILED.value,
            failure_reason=(reason or "unknown error")[:MAX_FAILURE_REASON_LENGTH],
            retry_count=WebhookEvent.retry_count + 1,
            next_retry_at=_backoff_expression(now),
            updated_at=now,
        )
        .returning(WebhookEvent.retry_count)
        .execution_options(synchronize_session=False)
    )
    return result.scalar_one_or_none()


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


async def list_failed(
    db: AsyncSession,
    max_retry_count: int,
    older_than: Optional[datetime] = None,
    limit: int = 50,
    stale_pending_before: Optional[datetime] = None,
) -> list[WebhookEvent]:
    """
    Retry candidates, oldest received first.

    Failed events below the retry ceiling, plus (with stale_pending_before)
    pending events whose attempt never settled. The list is head-of-line:
    it ends at the first event still inside its backoff window, so a later
    event is never handed out ahead of an earlier one.
    """
    cutoff = _as_utc(older_than or _now())
    eligible = and_(
        WebhookEvent.outcome == EventOutcome.FAILED.value,
        WebhookEvent.retry_count < max_retry_count,
    )
    if stale_pending_before is not None:
        eligible = or_(eligible, and_(
            WebhookEvent.outcome == EventOutcome.PENDING.value,
            WebhookEvent.updated_at <= stale_pending_before,
        ))
    result = await db.execute(
        select(WebhookEvent)
        .where(eligible)
        .order_by(WebhookEvent.received_at.asc(), WebhookEvent.id.asc())
        .limit(limit)
        .execution_options(populate_existing=True)
    )

    due = []
    for event in result.scalars().all():
        if event.next_retry_at is not None and _as_utc(event.next_retry_at) > cutoff:
            break
        due.append(event)
    return due


def _filter_conditions(filters: Optional[EventFilters], max_retry_count: Optional[int]) -> list:
    if filters is None:
        return []
    conditions = []
    if filters.source_system:
        conditions.append(WebhookEvent.source_system == filters.source_system)
    if filters.event_type:
        conditions.append(WebhookEvent.event_type == filters.event_type)
    if filters.outcome:
        conditions.append(WebhookEvent.outcome == filters.outcome)
    if filters.received_after:
        conditions.append(WebhookEvent.received_at >= filters.received_after)
    if filters.received_before:
        conditions.append(WebhookEvent.received_at < filters.received_before)
    if filters.exhausted_only and max_retry_count is not None:
        conditions.append(WebhookEvent.outcome == EventOutcome.FAILED.value)
        conditions.append(WebhookEvent.retry_count >= max_retry_count)
    return conditions


async def query_events(
    db: AsyncSession,
    filters: Optional[EventFilters] = None,
    page: int = 1,
    per_page: int = 50,
    max_retry_count: Optional[int] = None,
) -> tuple[list[WebhookEvent], int]:
    """Filtered, paginated listing, newest first. Returns (events, total)."""
    conditions = _filter_conditions(filters, max_retry_count)
    where = and_(*conditions) if conditions else None

    count_query = select(func.count(WebhookEvent.id))
    list_query = select(WebhookEvent)
    if where is not None:
        count_query = count_query.where(where)
        list_query = list_query.where(where)

    total = (await db.execute(count_query)).scalar() or 0
    result = await db.execute(
        list_query
        .order_by(desc(WebhookEvent.received_at))
        .offset((page - 1) * per_page)
        .limit(per_page)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all()), total


async def event_stats(db: AsyncSession, max_retry_count: int) -> dict:
    """Totals per outcome and per source, plus events stuck at the retry ceiling."""
    by_outcome = {outcome.value: 0 for outcome in EventOutcome}
    result = await db.execute(
        select(WebhookEvent.outcome, func.count(WebhookEvent.id)).group_by(WebhookEvent.outcome)
    )
    for outcome, count in result.all():
        by_outcome[outcome] = count

    by_source: dict[str, int] = {}
    result = await db.execute(
        select(WebhookEvent.source_system, func.count(WebhookEvent.id))
        .group_by(WebhookEvent.source_system)
    )
    for source, count in result.all():
        by_source[source] = count

    exhausted = (await db.execute(
        select(func.count(WebhookEvent.id)).where(
            WebhookEvent.outcome == EventOutcome.FAILED.value,
            WebhookEvent.retry_count >= max_retry_count,
        )
    )).scalar() or 0

    return {
        "total": sum(by_outcome.values()),
        "by_outcome": by_outcome,
        "by_source": by_source,
        "exhausted": exhausted,
    }


async def export_events_csv(
    db: AsyncSession,
    filters: Optional[EventFilters] = None,
    max_rows: int = 10000,
    max_retry_count: Optional[int] = None,
) -> str:
    """Flat CSV of matching events (newest first, capped at max_rows)."""
    conditions = _filter_conditions(filters, max_retry_count)
    query = select(WebhookEvent)
    if conditions:
        query = query.where(and_(*conditions))
    result = await db.execute(
        query.order_by(desc(WebhookEvent.received_at))
        .limit(max_rows)
        .execution_options(populate_existing=True)
    )
    events = result.scalars().all()

    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(EXPORT_COLUMNS)
    for event in events:
        writer.writerow([
            str(event.id),
            event.source_system,
            event.event_type,
            event.external_id or "",
            event.outcome,
            event.retry_count,
            event.failure_reason or "",
            event.received_at.isoformat() if event.received_at else "",
            event.processed_at.isoformat() if event.processed_at else "",
            event.next_retry_at.isoformat() if event.next_retry_at else "",
        ])
    return output.getvalue()
