"""
Inbound webhook ingestion - verify -> parse -> record -> dispatch.

Nothing is written for a request that fails verification. Once an event is
recorded, the caller acknowledges it whatever the processing outcome: a
failed event is the retry worker's to finish.
"""
import json
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from bookon_relay.errors import AuthenticationFailure, MalformedPayload
from bookon_relay.models.webhook_event import EventOutcome, SourceSystem
from bookon_relay.services import event_store
from bookon_relay.utils.webhook_signatures import verify_webhook, compute_payload_hash

logger = logging.getLogger(__name__)


@dataclass
class ParsedEvent:
    event_type: str
    external_id: Optional[str]
    payload: dict


@dataclass
class IngestResult:
    event_id: str
    outcome: str
    duplicate: bool = False
    notifications: int = 0


def _load_json(raw_body: bytes) -> dict:
    try:
        body = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as e:
        raise MalformedPayload(f"Body is not valid JSON: {e}")
    if not isinstance(body, dict):
        raise MalformedPayload("Body must be a JSON object")
    return body


def parse_payment_provider_event(raw_body: bytes) -> ParsedEvent:
    """Stripe event envelope: {"id", "type", "data": {"object": {...}}}."""
    body = _load_json(raw_body)
    event_type = body.get("type")
    event_id = body.get("id")
    if not isinstance(event_type, str) or not event_type:
        raise MalformedPayload("Missing event type")
    if not isinstance(event_id, str) or not event_id:
        raise MalformedPayload("Missing event id")
    data = body.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        raise MalformedPayload("Missing data.object")
    return ParsedEvent(event_type=event_type, external_id=event_id, payload=obj)


def parse_external_event(raw_body: bytes) -> ParsedEvent:
    """Generic envelope: {"event": "<type>", "data": {...}, "id": "<optional>"}."""
    body = _load_json(raw_body)
    event_type = body.get("event")
    if not isinstance(event_type, str) or not event_type:
        raise MalformedPayload("Missing event type")
    data = body.get("data") or {}
    if not isinstance(data, dict):
        raise MalformedPayload("data must be an object")
    external_id = body.get("id")
    return ParsedEvent(
        event_type=event_type,
        external_id=str(external_id) if external_id else None,
        payload=data,
    )


PARSERS = {
    SourceSystem.PAYMENT_PROVIDER: parse_payment_provider_event,
    SourceSystem.EXTERNAL: parse_external_event,
}


async def ingest_webhook(
    db: AsyncSession,
    dispatcher,
    source_system: str,
    raw_body: bytes,
    signature_header: Optional[str],
) -> IngestResult:
    """
    Authenticate, record and process one inbound webhook.
    Raises AuthenticationFailure or MalformedPayload; processing failures do not raise.
    """
    verification = verify_webhook(source_system, raw_body, signature_header)
    if not verification.ok:
        logger.warning(
            "Rejected %s webhook: %s", source_system, verification.reason,
            extra={"source_system": source_system, "error_code": verification.reason},
        )
        from bookon_relay.utils.alerting import send_alert, AlertType
        await send_alert(
            AlertType.WEBHOOK_SIGNATURE_INVALID,
            f"Rejected {source_system} webhook ({verification.reason})",
            severity="warning",
            dedup_key=source_system,
        )
        raise AuthenticationFailure("Invalid signature", detail={"reason": verification.reason})

    parser = PARSERS.get(source_system)
    if parser is None:
        raise MalformedPayload(f"Unknown source system: {source_system}")
    parsed = parser(raw_body)

    event, created = await event_store.record_event(
        db,
        source_system=source_system,
        event_type=parsed.event_type,
        external_id=parsed.external_id,
        payload=parsed.payload,
        payload_hash=compute_payload_hash(raw_body),
    )

    if not created and event.outcome == EventOutcome.PROCESSED.value:
        return IngestResult(event_id=str(event.id), outcome=event.outcome, duplicate=True)

    # A failed event re-delivered upstream is re-driven now
    result = await dispatcher.dispatch(db, event)
    return IngestResult(
        event_id=result.event_id,
        outcome=result.outcome,
        duplicate=not created,
        notifications=len(result.notifications),
    )
