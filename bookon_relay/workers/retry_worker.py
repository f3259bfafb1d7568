"""
Retry worker - re-drives failed events through the dispatcher.
Runs every retry_poll_interval_seconds, oldest received first, one event at a time.
An event still inside its backoff window, or one that fails again, holds back
every event received after it.
Events at the retry ceiling are never picked up again; they stay failed for operator review.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

logger = logging.getLogger(__name__)

HEARTBEAT_TTL_SECONDS = 300


async def _heartbeat():
    """Store heartbeat timestamp in Redis."""
    try:
        from bookon_relay.utils.cache import get_redis, make_key
        redis = await get_redis()
        await redis.set(
            make_key("worker_health", "retry_worker"),
            datetime.now(timezone.utc).isoformat(),
            ex=HEARTBEAT_TTL_SECONDS,
        )
    except Exception as e:
        logger.debug("Retry worker heartbeat failed: %s", str(e))


async def run_retry_worker(dispatcher, poll_interval: Optional[float] = None):
    """Main retry worker loop. Runs until cancelled."""
    from bookon_relay.config import get_settings
    interval = poll_interval or get_settings().retry_poll_interval_seconds
    logger.info("Retry worker started (interval=%ss)", interval)

    while True:
        try:
            summary = await retry_failed_events(dispatcher)
            if summary["attempted"] > 0:
                logger.info(
                    "Retry worker: %d attempted, %d processed, %d failed",
                    summary["attempted"], summary["processed"], summary["failed"],
                )
        except Exception as e:
            logger.error("Retry worker error: %s", str(e), exc_info=True)
            from bookon_relay.utils.alerting import send_alert, AlertType
            await send_alert(AlertType.RETRY_WORKER_ERROR, f"Retry pass failed: {str(e)[:200]}")

        await _heartbeat()
        await asyncio.sleep(interval)


async def retry_failed_events(
    dispatcher,
    session_factory=None,
    now: Optional[datetime] = None,
    limit: Optional[int] = None,
) -> dict:
    """
    One retry pass, oldest received first. Each event is dispatched in its own
    session so one event's rollback cannot touch another's.

    The pass is head-of-line: it stops at the first event that fails again,
    leaving everything received after it for a later pass.
    """
    from bookon_relay.config import get_settings
    from bookon_relay.models.webhook_event import EventOutcome
    from bookon_relay.services import event_store
    from bookon_relay.utils.logging import correlation_scope

    if session_factory is None:
        from bookon_relay.database import async_session_factory
        session_factory = async_session_factory

    settings = get_settings()
    now = now or datetime.now(timezone.utc)
    summary = {"attempted": 0, "processed": 0, "failed": 0}

    async with session_factory() as db:
        candidates = await event_store.list_failed(
            db,
            max_retry_count=settings.retry_max_attempts,
            older_than=now,
            limit=limit or settings.retry_batch_size,
            stale_pending_before=now - timedelta(seconds=settings.retry_stale_pending_seconds),
        )
        event_ids = [event.id for event in candidates]

    for event_id in event_ids:
        async with session_factory() as db:
            event = await event_store.get_event(db, event_id)
            if event is None or event.outcome == EventOutcome.PROCESSED.value:
                # Resolved by another path since the scan
                continue
            summary["attempted"] += 1
            with correlation_scope(event.correlation_id):
                result = await dispatcher.dispatch(db, event)

        if result.outcome == EventOutcome.PROCESSED.value:
            summary["processed"] += 1
            continue

        summary["failed"] += 1
        logger.info(
            "Retry %d failed for event %s - holding later events until it settles",
            result.retry_count, str(event_id)[:8],
            extra={"event_id": str(event_id)},
        )
        break

    return summary
