"""
Tests for bookon_relay/services/event_store.py - the event ledger.
"""
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import update

from bookon_relay.models.webhook_event import EventOutcome, WebhookEvent
from bookon_relay.services import event_store
from bookon_relay.services.event_store import EventFilters

FUTURE = datetime.now(timezone.utc) + timedelta(days=1)


async def _record(db, external_id="evt_1", source="payment-provider", event_type="payment_intent.succeeded"):
    event, _ = await event_store.record_event(db, source, event_type, external_id, {"id": "pi_1"})
    return event


async def _fail(db, event, times=1, reason="boom"):
    for _ in range(times):
        count = await event_store.mark_failed(db, event.id, reason)
        await db.commit()
    return count


class TestRecordEvent:
    async def test_inserts_pending(self, db):
        event, created = await event_store.record_event(
            db, "payment-provider", "payment_intent.succeeded", "evt_1", {"id": "pi_1"}, payload_hash="abc",
        )
        assert created is True
        assert event.outcome == EventOutcome.PENDING.value
        assert event.retry_count == 0
        assert event.payload == {"id": "pi_1"}
        assert event.payload_hash == "abc"

    async def test_duplicate_key_returns_existing(self, db):
        first = await _record(db)
        second, created = await event_store.record_event(
            db, "payment-provider", "payment_intent.succeeded", "evt_1", {"id": "pi_1"},
        )
        assert created is False
        assert second.id == first.id

    async def test_duplicate_of_processed_event_keeps_outcome(self, db):
        first = await _record(db)
        assert await event_store.mark_processed(db, first.id) is True
        await db.commit()

        again, created = await event_store.record_event(
            db, "payment-provider", "payment_intent.succeeded", "evt_1", {"id": "pi_1"},
        )
        assert created is False
        assert again.outcome == EventOutcome.PROCESSED.value

    async def test_same_external_id_different_source_is_distinct(self, db):
        a = await _record(db, source="payment-provider")
        b = await _record(db, source="external", event_type="payment.completed")
        assert a.id != b.id

    async def test_null_external_ids_are_not_deduplicated(self, db):
        a = await _record(db, external_id=None, source="external", event_type="booking.updated")
        b = await _record(db, external_id=None, source="external", event_type="booking.updated")
        assert a.id != b.id


class TestOutcomeTransitions:
    async def test_mark_processed_once(self, db):
        event = await _record(db)
        assert await event_store.mark_processed(db, event.id) is True
        await db.commit()
        assert await event_store.mark_processed(db, event.id) is False

        stored = await event_store.get_event(db, event.id)
        assert stored.outcome == EventOutcome.PROCESSED.value
        assert stored.processed_at is not None

    async def test_mark_failed_increments_and_schedules(self, db):
        event = await _record(db)
        assert await _fail(db, event, reason="handler exploded") == 1

        stored = await event_store.get_event(db, event.id)
        assert stored.outcome == EventOutcome.FAILED.value
        assert stored.retry_count == 1
        assert stored.failure_reason == "handler exploded"
        assert stored.next_retry_at is not None

        assert await _fail(db, event) == 2

    async def test_processed_is_terminal(self, db):
        event = await _record(db)
        await event_store.mark_processed(db, event.id)
        await db.commit()

        assert await event_store.mark_failed(db, event.id, "late failure") is None
        await db.commit()

        stored = await event_store.get_event(db, event.id)
        assert stored.outcome == EventOutcome.PROCESSED.value
        assert stored.retry_count == 0
        assert stored.failure_reason is None

    async def test_processing_a_failed_event_clears_failure_reason(self, db):
        event = await _record(db)
        await _fail(db, event)
        await event_store.mark_processed(db, event.id)
        await db.commit()

        stored = await event_store.get_event(db, event.id)
        assert stored.failure_reason is None
        assert stored.retry_count == 1

    async def test_backoff_follows_the_count_written(self, db):
        event = await _record(db)
        event_id = event.id
        # Another path bumped the count behind this session's back
        await db.execute(
            update(WebhookEvent).where(WebhookEvent.id == event_id).values(retry_count=3)
        )
        await db.commit()

        before = datetime.now(timezone.utc)
        assert await event_store.mark_failed(db, event_id, "boom") == 4
        await db.commit()

        stored = await event_store.get_event(db, event_id)
        retry_at = stored.next_retry_at.replace(tzinfo=timezone.utc)
        assert before + timedelta(minutes=59) <= retry_at <= before + timedelta(minutes=61)

    async def test_backoff_caps_at_last_delay(self, db):
        event = await _record(db)
        before = datetime.now(timezone.utc)
        assert await _fail(db, event, times=7) == 7

        stored = await event_store.get_event(db, event.id)
        retry_at = stored.next_retry_at.replace(tzinfo=timezone.utc)
        assert retry_at >= before + timedelta(minutes=239)

    async def test_mark_failed_unknown_event(self, db):
        assert await event_store.mark_failed(db, uuid.uuid4(), "nope") is None

    async def test_failure_reason_truncated(self, db):
        event = await _record(db)
        await _fail(db, event, reason="x" * 5000)
        stored = await event_store.get_event(db, event.id)
        assert len(stored.failure_reason) == event_store.MAX_FAILURE_REASON_LENGTH


class TestNextRetryAt:
    def test_backoff_grows_then_caps(self):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        delays = [(event_store.next_retry_at(n, now) - now).total_seconds() / 60 for n in range(1, 8)]
        assert delays[:5] == [1, 5, 15, 60, 240]
        assert delays[5:] == [240, 240]


class TestListFailed:
    async def test_oldest_received_first(self, db):
        base = datetime(2026, 1, 1, tzinfo=timezone.utc)
        # Insert newest first so ordering cannot come from insertion order
        for i, minutes in enumerate([30, 10, 20]):
            event = WebhookEvent(
                source_system="payment-provider",
                event_type="payment_intent.succeeded",
                external_id=f"evt_{i}",
                payload={},
                outcome=EventOutcome.FAILED.value,
                retry_count=1,
                received_at=base + timedelta(minutes=minutes),
            )
            db.add(event)
        await db.commit()

        failed = await event_store.list_failed(db, max_retry_count=3, older_than=FUTURE)
        assert [e.external_id for e in failed] == ["evt_1", "evt_2", "evt_0"]

    async def test_excludes_events_at_ceiling(self, db):
        event = await _record(db)
        await _fail(db, event, times=3)
        assert await event_store.list_failed(db, max_retry_count=3, older_than=FUTURE) == []
        assert len(await event_store.list_failed(db, max_retry_count=4, older_than=FUTURE)) == 1

    async def test_respects_backoff(self, db):
        event = await _record(db)
        await _fail(db, event)
        assert await event_store.list_failed(db, max_retry_count=3, older_than=datetime.now(timezone.utc)) == []
        assert len(await event_store.list_failed(db, max_retry_count=3, older_than=FUTURE)) == 1

    async def test_excludes_pending_and_processed(self, db):
        await _record(db, external_id="evt_pending")
        done = await _record(db, external_id="evt_done")
        await event_store.mark_processed(db, done.id)
        await db.commit()
        assert await event_store.list_failed(db, max_retry_count=3, older_than=FUTURE) == []

    async def test_stops_at_first_event_inside_backoff(self, db):
        now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        for external_id, received_minute, retry_at in [
            ("evt_earlier", 0, now + timedelta(minutes=3)),
            ("evt_later", 1, now),
        ]:
            db.add(WebhookEvent(
                source_system="payment-provider",
                event_type="payment_intent.succeeded",
                external_id=external_id,
                payload={},
                outcome=EventOutcome.FAILED.value,
                retry_count=1,
                next_retry_at=retry_at,
                received_at=now - timedelta(hours=1) + timedelta(minutes=received_minute),
            ))
        await db.commit()

        assert await event_store.list_failed(db, max_retry_count=3, older_than=now) == []
        due = await event_store.list_failed(db, max_retry_count=3, older_than=now + timedelta(minutes=3))
        assert [e.external_id for e in due] == ["evt_earlier", "evt_later"]

    async def test_exhausted_events_do_not_block_later_ones(self, db):
        first = await _record(db, external_id="evt_exhausted")
        await _fail(db, first, times=3)
        second = await _record(db, external_id="evt_retryable")
        await _fail(db, second)

        due = await event_store.list_failed(db, max_retry_count=3, older_than=FUTURE)
        assert [e.external_id for e in due] == ["evt_retryable"]

    async def test_includes_stale_pending_when_asked(self, db):
        now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        for external_id, touched in [("evt_stuck", now - timedelta(hours=1)), ("evt_in_flight", now)]:
            db.add(WebhookEvent(
                source_system="payment-provider",
                event_type="payment_intent.succeeded",
                external_id=external_id,
                payload={},
                outcome=EventOutcome.PENDING.value,
                received_at=touched,
                updated_at=touched,
            ))
        await db.commit()

        assert await event_store.list_failed(db, max_retry_count=3, older_than=now) == []
        due = await event_store.list_failed(
            db, max_retry_count=3, older_than=now,
            stale_pending_before=now - timedelta(minutes=5),
        )
        assert [e.external_id for e in due] == ["evt_stuck"]


class TestQueryAndStats:
    async def _seed(self, db):
        ok = await _record(db, external_id="evt_ok")
        await event_store.mark_processed(db, ok.id)
        await db.commit()
        retrying = await _record(db, external_id="evt_retrying")
        await _fail(db, retrying)
        exhausted = await _record(db, external_id="evt_dead")
        await _fail(db, exhausted, times=3)
        await _record(db, external_id="ext_1", source="external", event_type="booking.created")
        return ok, retrying, exhausted

    async def test_filters_and_pagination(self, db):
        await self._seed(db)

        events, total = await event_store.query_events(db, EventFilters(source_system="payment-provider"))
        assert total == 3

        events, total = await event_store.query_events(db, EventFilters(outcome="failed"))
        assert total == 2

        events, total = await event_store.query_events(
            db, EventFilters(exhausted_only=True), max_retry_count=3,
        )
        assert total == 1
        assert events[0].external_id == "evt_dead"

        events, total = await event_store.query_events(db, None, page=2, per_page=3)
        assert total == 4
        assert len(events) == 1

    async def test_received_window(self, db):
        await self._seed(db)
        _, total = await event_store.query_events(db, EventFilters(received_after=FUTURE))
        assert total == 0
        _, total = await event_store.query_events(db, EventFilters(received_before=FUTURE))
        assert total == 4

    async def test_stats(self, db):
        await self._seed(db)
        stats = await event_store.event_stats(db, max_retry_count=3)
        assert stats["total"] == 4
        assert stats["by_outcome"] == {"pending": 1, "processed": 1, "failed": 2}
        assert stats["by_source"] == {"payment-provider": 3, "external": 1}
        assert stats["exhausted"] == 1

    async def test_export_csv(self, db):
        await self._seed(db)
        content = await event_store.export_events_csv(db, EventFilters(outcome="failed"), max_rows=10)
        lines = content.strip().splitlines()
        assert lines[0].split(",") == event_store.EXPORT_COLUMNS
        assert len(lines) == 3
        assert "evt_dead" in content

    async def test_export_respects_cap(self, db):
        await self._seed(db)
        content = await event_store.export_events_csv(db, None, max_rows=2)
        assert len(content.strip().splitlines()) == 3
