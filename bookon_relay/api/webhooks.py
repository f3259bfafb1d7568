"""
Inbound webhook endpoints.
No JWT auth - each source is authenticated by its signature scheme.

Responses:
- 401 if the signature is invalid (nothing recorded)
- 400 if the payload cannot be parsed
- 200 {"received": true} for every recorded event, whatever the processing
  outcome, so the sender does not re-deliver what the retry worker will finish
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from bookon_relay.database import get_db
from bookon_relay.errors import AuthenticationFailure, MalformedPayload
from bookon_relay.models.webhook_event import SourceSystem
from bookon_relay.schemas.api_responses import WebhookAck
from bookon_relay.services.ingestion import ingest_webhook
from bookon_relay.utils.webhook_signatures import SIGNATURE_HEADERS

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


def get_dispatcher(request: Request):
    return request.app.state.dispatcher


async def _ingest(
    source_system: str,
    request: Request,
    db: AsyncSession,
    dispatcher,
) -> WebhookAck:
    body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADERS[source_system], "")
    try:
        result = await ingest_webhook(db, dispatcher, source_system, body, signature)
    except AuthenticationFailure:
        raise HTTPException(status_code=401, detail="Invalid webhook signature")
    except MalformedPayload as e:
        logger.warning(
            "Malformed %s webhook: %s", source_system, e.message,
            extra={"source_system": source_system, "error_code": e.error_code},
        )
        raise HTTPException(status_code=400, detail=e.message)

    return WebhookAck(
        event_id=result.event_id,
        duplicate=result.duplicate,
        outcome=result.outcome,
    )


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    dispatcher=Depends(get_dispatcher),
):
    """Payment provider events, authenticated by Stripe-Signature."""
    return await _ingest(SourceSystem.PAYMENT_PROVIDER, request, db, dispatcher)


@router.post("/external", response_model=WebhookAck)
async def external_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    dispatcher=Depends(get_dispatcher),
):
    """Generic integration events, authenticated by X-Webhook-Secret."""
    return await _ingest(SourceSystem.EXTERNAL, request, db, dispatcher)
