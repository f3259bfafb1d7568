"""
Tests for bookon_relay/services/dispatcher.py - outcome settlement, atomicity and idempotency.
"""
import asyncio
import uuid
from unittest.mock import AsyncMock, patch

from bookon_relay.config import Settings
from bookon_relay.models.webhook_event import EventOutcome
from bookon_relay.schemas.notifications import Notification
from bookon_relay.services import business_store, event_store
from bookon_relay.services.dispatcher import EventDispatcher, HandlerContext

BOOKING_ID = uuid.UUID("33333333-3333-3333-3333-333333333333")


async def _record(db, event_type="payment_intent.succeeded", external_id="evt_1", payload=None):
    event, _ = await event_store.record_event(
        db, "payment-provider", event_type, external_id, payload or {"id": "pi_test_123"},
    )
    return event


def _dispatcher(notifier, **overrides) -> EventDispatcher:
    return EventDispatcher(notifier=notifier, settings=Settings(**overrides))


class TestRegistration:
    def test_default_handlers_registered(self, dispatcher):
        types = dispatcher.registered_types()
        assert ("payment-provider", "payment_intent.succeeded") in types
        assert ("payment-provider", "payment_intent.payment_failed") in types
        assert ("payment-provider", "customer.created") in types
        assert ("payment-provider", "customer.updated") in types
        assert ("external", "payment.completed") in types
        assert ("external", "booking.created") in types
        assert ("external", "booking.updated") in types

    def test_multiple_handlers_per_type(self, notifier):
        d = _dispatcher(notifier)

        async def a(ctx):
            return []

        async def b(ctx):
            return []

        d.register("external", "x", a)
        d.register("external", "x", b)
        assert d.handlers_for("external", "x") == [a, b]
        assert d.handlers_for("external", "y") == []


class TestSuccessfulDispatch:
    async def test_payment_succeeded_confirms_booking_and_notifies(self, db, booking, dispatcher, notifier):
        event = await _record(db)
        result = await dispatcher.dispatch(db, event)

        assert result.outcome == EventOutcome.PROCESSED.value
        assert result.skipped is False
        assert len(result.notifications) == 2

        stored = await business_store.get_booking(db, BOOKING_ID)
        assert stored.status == "confirmed"
        assert stored.payment_status == "paid"

        published = [call.args[0] for call in notifier.publish.call_args_list]
        assert {(n.address_type, n.address_id) for n in published} == {
            ("user", "11111111-1111-1111-1111-111111111111"),
            ("room", "venue-1"),
        }
        assert all(n.kind == "payment_update" for n in published)

        stored_event = await event_store.get_event(db, event.id)
        assert stored_event.outcome == EventOutcome.PROCESSED.value

    async def test_second_dispatch_is_a_noop(self, db, booking, dispatcher, notifier):
        event = await _record(db)
        await dispatcher.dispatch(db, event)
        again = await dispatcher.dispatch(db, event)

        assert again.skipped is True
        assert again.outcome == EventOutcome.PROCESSED.value
        assert again.notifications == []
        assert notifier.publish.call_count == 2

    async def test_handler_receives_recorded_payload(self, db, notifier):
        seen = {}

        async def capture(ctx: HandlerContext):
            seen["payload"] = ctx.payload
            seen["type"] = ctx.event_type
            seen["external_id"] = ctx.external_id
            return []

        d = _dispatcher(notifier)
        d.register("payment-provider", "charge.captured", capture)
        event = await _record(db, event_type="charge.captured", payload={"id": "ch_1", "amount": 500})
        await d.dispatch(db, event)

        assert seen == {"payload": {"id": "ch_1", "amount": 500}, "type": "charge.captured", "external_id": "evt_1"}


class TestUnhandledTypes:
    async def test_unknown_type_is_processed_without_side_effects(self, db, dispatcher, notifier):
        event = await _record(db, event_type="invoice.created")
        result = await dispatcher.dispatch(db, event)

        assert result.outcome == EventOutcome.PROCESSED.value
        assert result.handled is False
        notifier.publish.assert_not_called()

    async def test_unexpected_missing_handler_alerts(self, db, notifier):
        d = _dispatcher(notifier, expected_event_types="payment-provider:charge.refunded")
        event = await _record(db, event_type="charge.refunded")

        with patch("bookon_relay.utils.alerting.send_alert", new_callable=AsyncMock) as mock_alert:
            result = await d.dispatch(db, event)
            await asyncio.sleep(0)

        assert result.outcome == EventOutcome.PROCESSED.value
        mock_alert.assert_awaited_once()
        assert mock_alert.call_args.args[0] == "unexpected_event_type"

    async def test_slow_alert_channel_does_not_hold_dispatch(self, db, notifier):
        d = _dispatcher(notifier, expected_event_types="payment-provider:charge.refunded")
        event = await _record(db, event_type="charge.refunded")
        event_id = event.id
        release = asyncio.Event()
        seen = {}

        async def hanging_alert(*args, **kwargs):
            seen["locks_held"] = len(d._locks)
            seen["outcome"] = (await event_store.get_event(db, event_id)).outcome
            await release.wait()

        with patch("bookon_relay.utils.alerting.send_alert", side_effect=hanging_alert):
            result = await asyncio.wait_for(d.dispatch(db, event), timeout=2)
            await asyncio.sleep(0.01)
            release.set()
            await asyncio.sleep(0)

        assert result.outcome == EventOutcome.PROCESSED.value
        # The alert only ran once the event was committed and the key released
        assert seen == {"locks_held": 0, "outcome": EventOutcome.PROCESSED.value}

    async def test_unlisted_unknown_type_does_not_alert(self, db, notifier):
        d = _dispatcher(notifier, expected_event_types="payment-provider:charge.refunded")
        event = await _record(db, event_type="invoice.created")

        with patch("bookon_relay.utils.alerting.send_alert", new_callable=AsyncMock) as mock_alert:
            await d.dispatch(db, event)

        mock_alert.assert_not_called()


class TestFailedDispatch:
    async def test_failure_rolls_back_mutations_and_forwards_nothing(self, db, booking, notifier):
        async def half_done(ctx):
            await business_store.set_booking_payment_state(ctx.db, "pi_test_123", "confirmed", "paid")
            raise RuntimeError("downstream unavailable")

        d = _dispatcher(notifier)
        d.register("payment-provider", "payment_intent.succeeded", half_done)
        event = await _record(db)
        event_id = event.id

        result = await d.dispatch(db, event)

        assert result.outcome == EventOutcome.FAILED.value
        assert result.retry_count == 1
        assert "downstream unavailable" in result.error
        notifier.publish.assert_not_called()

        stored = await business_store.get_booking(db, BOOKING_ID)
        assert stored.status == "pending"
        assert stored.payment_status == "pending"

        stored_event = await event_store.get_event(db, event_id)
        assert stored_event.outcome == EventOutcome.FAILED.value
        assert "half_done" in stored_event.failure_reason

    async def test_notifications_from_earlier_handlers_dropped_on_later_failure(self, db, notifier):
        async def ok(ctx):
            return [Notification.to_user("u1", "booking_update", {})]

        async def broken(ctx):
            raise ValueError("bad data")

        d = _dispatcher(notifier)
        d.register("external", "booking.updated", ok)
        d.register("external", "booking.updated", broken)
        event, _ = await event_store.record_event(db, "external", "booking.updated", "ext_1", {})

        result = await d.dispatch(db, event)
        assert result.outcome == EventOutcome.FAILED.value
        assert result.notifications == []
        notifier.publish.assert_not_called()

    async def test_timeout_is_a_failure(self, db, notifier):
        async def slow(ctx):
            await asyncio.sleep(5)
            return []

        d = _dispatcher(notifier, handler_timeout_seconds=0.05)
        d.register("payment-provider", "payment_intent.succeeded", slow)
        event = await _record(db)

        result = await d.dispatch(db, event)
        assert result.outcome == EventOutcome.FAILED.value
        assert "timed out" in result.error

    async def test_reaching_ceiling_alerts(self, db, notifier):
        async def broken(ctx):
            raise RuntimeError("still broken")

        d = _dispatcher(notifier, retry_max_attempts=2)
        d.register("payment-provider", "payment_intent.succeeded", broken)
        event = await _record(db)
        event_id = event.id

        with patch("bookon_relay.utils.alerting.send_alert", new_callable=AsyncMock) as mock_alert:
            first = await d.dispatch(db, event)
            assert first.exhausted is False
            mock_alert.assert_not_called()

            second = await d.dispatch(db, await event_store.get_event(db, event_id))
            await asyncio.sleep(0)

        assert second.exhausted is True
        assert second.retry_count == 2
        mock_alert.assert_awaited_once()
        assert mock_alert.call_args.args[0] == "event_retries_exhausted"

        # Never deleted
        assert await event_store.get_event(db, event_id) is not None


class TestConcurrentDispatch:
    async def test_same_event_processed_once(self, session_factory, db, notifier):
        calls = []

        async def counting(ctx):
            calls.append(ctx.event_id)
            await asyncio.sleep(0.01)
            return [Notification.to_user("u1", "payment_update", {})]

        d = _dispatcher(notifier)
        d.register("payment-provider", "payment_intent.succeeded", counting)
        event = await _record(db)
        event_id = event.id

        async def run():
            async with session_factory() as session:
                loaded = await event_store.get_event(session, event_id)
                return await d.dispatch(session, loaded)

        results = await asyncio.gather(run(), run())

        assert len(calls) == 1
        assert sorted(r.skipped for r in results) == [False, True]
        assert notifier.publish.call_count == 1

    async def test_lock_released_after_dispatch(self, db, dispatcher):
        event = await _record(db, event_type="invoice.created")
        await dispatcher.dispatch(db, event)
        assert len(dispatcher._locks) == 0


class TestNotifierWiring:
    async def test_no_notifier_is_tolerated(self, db, booking):
        from bookon_relay.services.handlers import register_default_handlers
        d = EventDispatcher(notifier=None, settings=Settings())
        register_default_handlers(d)
        event = await _record(db)
        result = await d.dispatch(db, event)
        assert result.outcome == EventOutcome.PROCESSED.value
        assert len(result.notifications) == 2
