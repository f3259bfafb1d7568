"""
Relay error hierarchy.
Services raise these; the API layer translates them into HTTP responses.
"""
from typing import Optional


class RelayError(Exception):
    """Base class for every error raised by the relay."""

    error_code = "relay_error"

    def __init__(self, message: str, detail: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class AuthenticationFailure(RelayError):
    """Inbound webhook failed signature verification. Nothing was recorded."""

    error_code = "authentication_failed"


class MalformedPayload(RelayError):
    """Inbound webhook was authentic but could not be parsed into an event."""

    error_code = "malformed_payload"


class HandlerFailure(RelayError):
    """A side-effect handler raised or timed out."""

    error_code = "handler_failed"

    def __init__(self, message: str, handler_name: str = "", detail: Optional[dict] = None):
        super().__init__(message, detail)
        self.handler_name = handler_name
