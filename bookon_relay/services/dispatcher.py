"""
Event dispatcher - routes a recorded event to its side-effect handlers and
settles the outcome.

Per event:
1. Serialize on the idempotency key (in-process keyed lock)
2. Skip if already processed
3. Run each handler under a timeout, collecting Notifications
4. Success: mark processed and commit together with the handlers' mutations,
   then hand every Notification to the notifier (non-blocking)
5. Failure: roll back the handlers' mutations, mark failed, forward nothing

Across processes the conditional UPDATE in mark_processed is the serialization point.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from bookon_relay.errors import HandlerFailure
from bookon_relay.models.webhook_event import WebhookEvent, EventOutcome
from bookon_relay.schemas.notifications import Notification
from bookon_relay.services import event_store
from bookon_relay.utils.locks import KeyedLock

logger = logging.getLogger(__name__)


@dataclass
class HandlerContext:
    """Everything a handler may touch: the session and the event being processed."""
    db: AsyncSession
    event_id: str
    source_system: str
    event_type: str
    external_id: Optional[str]
    payload: dict


Handler = Callable[[HandlerContext], Awaitable[list[Notification]]]


class Notifier(Protocol):
    def publish(self, notification: Notification) -> bool: ...


@dataclass
class DispatchResult:
    event_id: str
    outcome: str
    notifications: list[Notification] = field(default_factory=list)
    skipped: bool = False
    handled: bool = True
    error: Optional[str] = None
    retry_count: int = 0
    exhausted: bool = False


@dataclass(frozen=True)
class _EventRef:
    # Plain copy of the row - ORM instances expire on rollback
    id: uuid.UUID
    source_system: str
    event_type: str
    external_id: Optional[str]
    retry_count: int

    @property
    def log_extra(self) -> dict:
        return {
            "event_id": str(self.id),
            "source_system": self.source_system,
            "event_type": self.event_type,
        }


class EventDispatcher:
    def __init__(self, notifier: Optional[Notifier] = None, settings=None):
        if settings is None:
            from bookon_relay.config import get_settings
            settings = get_settings()
        self.settings = settings
        self.notifier = notifier
        self._handlers: dict[tuple[str, str], list[Handler]] = {}
        self._locks = KeyedLock("dispatch")

    def register(self, source_system: str, event_type: str, handler: Handler) -> None:
        self._handlers.setdefault((source_system, event_type), []).append(handler)
        logger.debug(
            "Registered handler %s for %s/%s",
            getattr(handler, "__name__", repr(handler)), source_system, event_type,
        )

    def handlers_for(self, source_system: str, event_type: str) -> list[Handler]:
        return list(self._handlers.get((source_system, event_type), []))

    def registered_types(self) -> list[tuple[str, str]]:
        return sorted(self._handlers.keys())

    async def dispatch(self, db: AsyncSession, event: WebhookEvent) -> DispatchResult:
        """Process one recorded event. Safe to call any number of times for the same event."""
        key = (event.source_system, event.external_id or str(event.id))
        event_id = event.id
        async with self._locks.hold(key):
            return await self._dispatch_locked(db, event_id)

    async def _dispatch_locked(self, db: AsyncSession, event_id) -> DispatchResult:
        current = await event_store.get_event(db, event_id)
        if current is None:
            logger.error("Dispatch for unknown event %s", str(event_id))
            return DispatchResult(
                event_id=str(event_id), outcome=EventOutcome.FAILED.value,
                skipped=True, error="event not found",
            )

        ref = _EventRef(
            id=current.id,
            source_system=current.source_system,
            event_type=current.event_type,
            external_id=current.external_id,
            retry_count=current.retry_count,
        )

        if current.outcome == EventOutcome.PROCESSED.value:
            logger.info("Event already processed - skipping", extra=ref.log_extra)
            return DispatchResult(
                event_id=str(ref.id), outcome=EventOutcome.PROCESSED.value,
                skipped=True, retry_count=ref.retry_count,
            )

        handlers = self.handlers_for(ref.source_system, ref.event_type)
        if not handlers:
            return await self._settle_unhandled(db, ref)

        ctx = HandlerContext(
            db=db,
            event_id=str(ref.id),
            source_system=ref.source_system,
            event_type=ref.event_type,
            external_id=ref.external_id,
            payload=dict(current.payload or {}),
        )

        notifications: list[Notification] = []
        try:
            for handler in handlers:
                produced = await self._run_handler(handler, ctx)
                notifications.extend(produced or [])

            won = await event_store.mark_processed(db, ref.id)
            if not won:
                await db.rollback()
                logger.info("Event processed concurrently elsewhere - discarding", extra=ref.log_extra)
                return DispatchResult(
                    event_id=str(ref.id), outcome=EventOutcome.PROCESSED.value, skipped=True,
                )
            await db.commit()
        except Exception as e:
            return await self._settle_failure(db, ref, e)

        logger.info(
            "Event processed (%d notifications)", len(notifications), extra=ref.log_extra,
        )
        self._forward(notifications)
        return DispatchResult(
            event_id=str(ref.id),
            outcome=EventOutcome.PROCESSED.value,
            notifications=notifications,
            retry_count=ref.retry_count,
        )

    async def _run_handler(self, handler: Handler, ctx: HandlerContext) -> list[Notification]:
        name = getattr(handler, "__name__", repr(handler))
        timeout = self.settings.handler_timeout_seconds
        try:
            return await asyncio.wait_for(handler(ctx), timeout=timeout)
        except asyncio.TimeoutError:
            raise HandlerFailure(f"{name} timed out after {timeout}s", handler_name=name)
        except HandlerFailure:
            raise
        except Exception as e:
            raise HandlerFailure(f"{name} raised {type(e).__name__}: {e}", handler_name=name) from e

    async def _settle_unhandled(self, db: AsyncSession, ref: _EventRef) -> DispatchResult:
        """No handler registered: record as processed, then alert if the type was expected."""
        logger.info("No handler registered - marking processed", extra=ref.log_extra)
        won = await event_store.mark_processed(db, ref.id)
        await db.commit()

        if (ref.source_system, ref.event_type) in self.settings.expected_event_type_pairs:
            from bookon_relay.utils.alerting import schedule_alert, AlertType
            schedule_alert(
                AlertType.UNEXPECTED_EVENT_TYPE,
                f"Expected event type {ref.source_system}/{ref.event_type} has no handler",
                severity="warning",
                dedup_key=f"{ref.source_system}:{ref.event_type}",
            )

        return DispatchResult(
            event_id=str(ref.id),
            outcome=EventOutcome.PROCESSED.value,
            skipped=not won,
            handled=False,
            retry_count=ref.retry_count,
        )

    async def _settle_failure(self, db: AsyncSession, ref: _EventRef, error: Exception) -> DispatchResult:
        """Undo partial mutations, record the failed attempt, forward nothing."""
        if isinstance(error, HandlerFailure):
            reason, error_code = error.message, error.error_code
        else:
            reason, error_code = f"{type(error).__name__}: {error}", "dispatch_error"
        await db.rollback()
        logger.error(
            "Event processing failed: %s", reason,
            extra={**ref.log_extra, "error_code": error_code}, exc_info=True,
        )

        retry_count = await event_store.mark_failed(db, ref.id, reason)
        await db.commit()

        if retry_count is None:
            # Processed by another path between our attempt and the failure write
            return DispatchResult(
                event_id=str(ref.id), outcome=EventOutcome.PROCESSED.value,
                skipped=True, error=reason,
            )

        ceiling = self.settings.retry_max_attempts
        exhausted = retry_count >= ceiling
        if exhausted:
            logger.error(
                "Event exhausted retries (%d/%d) - left failed for operator review",
                retry_count, ceiling, extra=ref.log_extra,
            )
            from bookon_relay.utils.alerting import schedule_alert, AlertType
            schedule_alert(
                AlertType.EVENT_RETRIES_EXHAUSTED,
                f"Event {str(ref.id)[:8]} ({ref.source_system}/{ref.event_type}) "
                f"failed {retry_count} times: {reason[:200]}",
                extra={"event_id": str(ref.id)},
                dedup_key=str(ref.id),
            )

        return DispatchResult(
            event_id=str(ref.id),
            outcome=EventOutcome.FAILED.value,
            error=reason,
            retry_count=retry_count,
            exhausted=exhausted,
        )

    def _forward(self, notifications: list[Notification]) -> None:
        if not notifications:
            return
        if self.notifier is None:
            logger.debug("No notifier attached - dropping %d notifications", len(notifications))
            return
        for notification in notifications:
            self.notifier.publish(notification)
