"""
Side-effect handler registration.
"""
from bookon_relay.models.webhook_event import SourceSystem
from bookon_relay.services.handlers import external, payment_provider


def register_default_handlers(dispatcher) -> None:
    """Bind every known (source_system, event_type) to its handler."""
    for event_type, handler in payment_provider.HANDLERS.items():
        dispatcher.register(SourceSystem.PAYMENT_PROVIDER, event_type, handler)
    for event_type, handler in external.HANDLERS.items():
        dispatcher.register(SourceSystem.EXTERNAL, event_type, handler)
