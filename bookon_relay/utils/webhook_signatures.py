"""
Webhook signature validation - verify incoming webhooks are authentic.

Supported sources:
- payment-provider: Stripe scheme ("t=<ts>,v1=<hmac>") via Stripe-Signature,
  HMAC-SHA256 over "<ts>.<body>" with a timestamp tolerance for replay protection
- external: static shared secret via X-Webhook-Secret

Verification fails closed: an unknown source or an unconfigured secret rejects.
"""
import hashlib
import hmac
import logging
from typing import NamedTuple, Optional

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = {
    "payment-provider": "Stripe-Signature",
    "external": "X-Webhook-Secret",
}


class VerificationResult(NamedTuple):
    ok: bool
    reason: str = ""


def validate_stripe_signature(
    secret: str,
    signature: str,
    body: bytes,
    tolerance: int = 300,
) -> VerificationResult:
    """
    Validate a Stripe-Signature header with the stripe SDK.
    Returns (ok, reason); never raises.
    """
    if not secret:
        return VerificationResult(False, "secret_not_configured")
    if not signature:
        return VerificationResult(False, "missing_signature")

    try:
        payload = body.decode("utf-8")
    except UnicodeDecodeError:
        return VerificationResult(False, "undecodable_body")

    import stripe

    try:
        stripe.WebhookSignature.verify_header(payload, signature, secret, tolerance)
        return VerificationResult(True)
    except stripe.SignatureVerificationError as e:
        logger.warning("Stripe signature rejected: %s", str(e))
        return VerificationResult(False, "signature_mismatch")
    except Exception as e:
        logger.error("Stripe signature validation error: %s", str(e))
        return VerificationResult(False, "signature_error")


def validate_shared_secret(secret: str, provided: str) -> VerificationResult:
    """Constant-time comparison of a static shared secret."""
    if not secret:
        return VerificationResult(False, "secret_not_configured")
    if not provided:
        return VerificationResult(False, "missing_signature")
    if hmac.compare_digest(secret.encode("utf-8"), provided.encode("utf-8")):
        return VerificationResult(True)
    return VerificationResult(False, "signature_mismatch")


def compute_payload_hash(body: bytes) -> str:
    """Compute SHA-256 hash of raw payload for audit."""
    return hashlib.sha256(body).hexdigest()


def verify_webhook(
    source_system: str,
    raw_body: bytes,
    signature_header: Optional[str],
    settings=None,
) -> VerificationResult:
    """
    Verify an inbound webhook for the given source system.
    Pure function of its inputs and the configured secrets.
    """
    if settings is None:
        from bookon_relay.config import get_settings
        settings = get_settings()

    if source_system == "payment-provider":
        if not settings.stripe_webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET not set - rejecting payment-provider webhook")
        return validate_stripe_signature(
            settings.stripe_webhook_secret,
            signature_header or "",
            raw_body,
            tolerance=settings.stripe_signature_tolerance_seconds,
        )

    if source_system == "external":
        if not settings.external_webhook_secret:
            logger.error("EXTERNAL_WEBHOOK_SECRET not set - rejecting external webhook")
        return validate_shared_secret(settings.external_webhook_secret, signature_header or "")

    logger.warning("No verification scheme for source '%s' - rejecting webhook", source_system)
    return VerificationResult(False, "unknown_source")
