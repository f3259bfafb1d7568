"""
Send a signed test webhook to a running relay.

Usage:
    python scripts/simulate_webhook.py --intent pi_test_123
    python scripts/simulate_webhook.py --type payment_intent.payment_failed --intent pi_test_123
    python scripts/simulate_webhook.py --source external --type booking.updated --booking <uuid>
    python scripts/simulate_webhook.py --intent pi_test_123 --event-id evt_fixed --repeat 2
"""
import argparse
import asyncio
import hashlib
import hmac
import json
import logging
import os
import time
import uuid

import httpx

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

BASE_URL = os.environ.get("RELAY_BASE_URL", "http://localhost:8000")


def stripe_signature(body: bytes, secret: str, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header value for body."""
    ts = timestamp or int(time.time())
    signed = f"{ts}.{body.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


async def send_payment_provider_event(event_type: str, intent_id: str, event_id: str, secret: str):
    body = json.dumps({
        "id": event_id,
        "type": event_type,
        "data": {"object": {"id": intent_id, "object": "payment_intent", "amount": 4500}},
    }).encode("utf-8")
    async with httpx.AsyncClient(timeout=30) as client:
        resp = await client.post(
            f"{BASE_URL}/api/v1/webhooks/stripe",
            content=body,
            headers={"Content-Type": "application/json", "Stripe-Signature": stripe_signature(body, secret)},
        )
        logger.info("Stripe webhook response: %s %s", resp.status_code, resp.text)
        return resp


async def send_external_event(event_type: str, booking_id: str, event_id: str, secret: str):
    payload = {"event": event_type, "id": event_id, "data": {"bookingId": booking_id}}
    async with httpx.AsyncClient(timeout=30) as client:
        resp = await client.post(
            f"{BASE_URL}/api/v1/webhooks/external",
            json=payload,
            headers={"X-Webhook-Secret": secret},
        )
        logger.info("External webhook response: %s %s", resp.status_code, resp.text)
        return resp


async def main():
    parser = argparse.ArgumentParser(description="Simulate inbound webhooks")
    parser.add_argument("--source", default="payment-provider", choices=["payment-provider", "external"])
    parser.add_argument("--type", default=None)
    parser.add_argument("--intent", default="pi_test_123")
    parser.add_argument("--booking", default=str(uuid.uuid4()))
    parser.add_argument("--event-id", default=None)
    parser.add_argument("--repeat", type=int, default=1, help="Re-send the same event (duplicate delivery)")
    parser.add_argument("--secret", default=None)
    args = parser.parse_args()

    event_id = args.event_id or f"evt_{uuid.uuid4().hex[:24]}"
    for attempt in range(args.repeat):
        logger.info("Sending %s event %s (attempt %d)", args.source, event_id, attempt + 1)
        if args.source == "payment-provider":
            secret = args.secret or os.environ.get("STRIPE_WEBHOOK_SECRET", "")
            await send_payment_provider_event(
                args.type or "payment_intent.succeeded", args.intent, event_id, secret,
            )
        else:
            secret = args.secret or os.environ.get("EXTERNAL_WEBHOOK_SECRET", "")
            await send_external_event(args.type or "payment.completed", args.booking, event_id, secret)


if __name__ == "__main__":
    asyncio.run(main())
