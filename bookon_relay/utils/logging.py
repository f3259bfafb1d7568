"""
Structured JSON logging with correlation IDs.

One JSON object per line. A correlation id follows a webhook from the HTTP
request through recording, dispatch and fan-out. The id is stored with the
event, so the retry worker re-binds it and a retried attempt logs under the
original request's trail. Websocket connections log under their connection id.
"""
import json
import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Iterator, Optional

correlation_id_ctx: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Extra record attributes copied into the JSON line when present
EXTRA_FIELDS = (
    "event_id",
    "source_system",
    "event_type",
    "connection_id",
    "identity",
    "room_id",
    "error_code",
)

NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpcore", "httpx", "websockets", "stripe")

PLAIN_FORMAT = "%(asctime)s %(levelname)-7s [%(correlation_id)s] %(name)s: %(message)s"


def get_correlation_id() -> Optional[str]:
    return correlation_id_ctx.get()


def set_correlation_id(cid: Optional[str]) -> None:
    correlation_id_ctx.set(cid)


def generate_correlation_id() -> str:
    """UUID4 hex, 32 chars."""
    return uuid.uuid4().hex


@contextmanager
def correlation_scope(cid: Optional[str] = None) -> Iterator[str]:
    """Bind a correlation id (a fresh one when none is given) for the block, then restore the previous one."""
    bound = cid or generate_correlation_id()
    token = correlation_id_ctx.set(bound)
    try:
        yield bound
    finally:
        correlation_id_ctx.reset(token)


class CorrelationIdFilter(logging.Filter):
    """Stamps the current correlation id on every record so any formatter can use it."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "correlation_id", None) is None:
            record.correlation_id = get_correlation_id() or "-"
        return True


class StructuredJsonFormatter(logging.Formatter):
    """
    Formats log records as single-line JSON objects:
    {"timestamp", "level", "service", "logger", "correlation_id", "message", ...extras}
    """

    def __init__(self, service: str = "bookon-relay"):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        cid = getattr(record, "correlation_id", None)
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "correlation_id": cid if cid not in (None, "-") else get_correlation_id(),
            "message": record.getMessage(),
        }
        for key in EXTRA_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                entry[key] = val

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def configure_structured_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """
    Install a single stdout handler on the root logger.
    JSON lines in deployed environments, a readable one-liner for local development.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    # Remove existing handlers to avoid duplicate output
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    stream_handler = logging.StreamHandler()
    stream_handler.addFilter(CorrelationIdFilter())
    stream_handler.setFormatter(StructuredJsonFormatter() if json_output else logging.Formatter(PLAIN_FORMAT))
    root_logger.addHandler(stream_handler)

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)
