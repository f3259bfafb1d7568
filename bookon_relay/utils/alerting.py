"""
Operator alerting - surfaces conditions that need a human.

Alert channels:
1. Structured log (always) - at ERROR level (CRITICAL for critical severity)
2. Webhook (configurable) - Discord/Slack URL via ALERT_WEBHOOK_URL env var

Rate limiting: Per-type cooldowns to prevent alert storms.
Cooldowns stored in Redis (survives restarts); in-memory fallback when Redis is down.
"""
import asyncio
import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)

ALERT_COOLDOWN_SECONDS = 300  # 5 minutes (default)

# Per-type cooldown overrides (seconds)
ALERT_COOLDOWN_OVERRIDES: dict[str, int] = {
    "unexpected_event_type": 3600,
    "delivery_queue_full": 600,
}

# In-memory fallback when Redis is down
_local_cooldowns: dict[str, float] = {}  # cooldown key -> expiry (monotonic)

# Strong references to fire-and-forget alert tasks until they finish
_pending_alerts: set = set()


def _get_cooldown_seconds(alert_type: str) -> int:
    """Get cooldown duration for an alert type (per-type override or default)."""
    return ALERT_COOLDOWN_OVERRIDES.get(alert_type, ALERT_COOLDOWN_SECONDS)


class AlertType:
    """Alert type constants."""
    EVENT_RETRIES_EXHAUSTED = "event_retries_exhausted"
    UNEXPECTED_EVENT_TYPE = "unexpected_event_type"
    WEBHOOK_SIGNATURE_INVALID = "webhook_signature_invalid"
    DELIVERY_QUEUE_FULL = "delivery_queue_full"
    RETRY_WORKER_ERROR = "retry_worker_error"


async def send_alert(
    alert_type: str,
    message: str,
    correlation_id: Optional[str] = None,
    severity: str = "error",
    extra: Optional[dict] = None,
    dedup_key: Optional[str] = None,
) -> None:
    """
    Send an alert through all configured channels.
    Rate-limited per alert type (and optional dedup_key) to prevent alert storms.
    """
    cooldown_key = f"{alert_type}:{dedup_key}" if dedup_key else alert_type
    if not await _acquire_cooldown(cooldown_key, _get_cooldown_seconds(alert_type)):
        return

    from bookon_relay.utils.logging import get_correlation_id
    cid = correlation_id or get_correlation_id()

    log_message = f"ALERT [{alert_type}]: {message}"
    if cid:
        log_message += f" (correlation_id={cid})"

    if severity == "critical":
        logger.critical(log_message)
    elif severity == "warning":
        logger.warning(log_message)
    else:
        logger.error(log_message)

    await _send_webhook_alert(alert_type, message, severity, cid, extra)


def schedule_alert(alert_type: str, message: str, **kwargs) -> bool:
    """
    Fire-and-forget send_alert for callers that must not wait on an alert channel
    (e.g. while holding a lock). Returns False when there is no running loop.
    """
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        logger.debug("No running loop - %s alert skipped", alert_type)
        return False
    task = loop.create_task(send_alert(alert_type, message, **kwargs))
    _pending_alerts.add(task)
    task.add_done_callback(_pending_alerts.discard)
    return True


async def _acquire_cooldown(cooldown_key: str, cooldown: int) -> bool:
    """
    Atomically check-and-set alert cooldown. Returns True if alert should be sent.
    Uses Redis SET NX EX; falls back to an in-memory dict when Redis is unavailable.
    """
    try:
        from bookon_relay.utils.cache import get_redis, make_key
        redis = await get_redis()
        acquired = await redis.set(
            make_key("alert_cooldown", cooldown_key), "1", nx=True, ex=cooldown,
        )
        return bool(acquired)
    except Exception as e:
        logger.debug("Alert cooldown Redis check failed, using in-memory fallback: %s", str(e))
        now = time.monotonic()
        expiry = _local_cooldowns.get(cooldown_key, 0)
        if now < expiry:
            return False
        _local_cooldowns[cooldown_key] = now + cooldown
        return True


async def _send_webhook_alert(
    alert_type: str,
    message: str,
    severity: str,
    correlation_id: Optional[str],
    extra: Optional[dict],
) -> None:
    """Send alert to configured webhook (Discord/Slack)."""
    try:
        from bookon_relay.config import get_settings
        webhook_url = get_settings().alert_webhook_url
        if not webhook_url:
            return

        import httpx

        severity_emoji = {
            "critical": "\U0001f6a8",
            "error": "❌",
            "warning": "⚠️",
        }.get(severity, "ℹ️")
        content = f"{severity_emoji} **{alert_type}**\n{message}"
        if correlation_id:
            content += f"\n`correlation_id: {correlation_id}`"
        if extra:
            for key, val in extra.items():
                content += f"\n`{key}: {val}`"

        async with httpx.AsyncClient(timeout=5.0) as client:
            await client.post(webhook_url, json={"content": content})
    except Exception as e:
        # Alert sending failure should never crash the system
        logger.warning("Failed to send webhook alert: %s", str(e))
