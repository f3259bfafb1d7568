"""
BookOn Event Relay - payment/integration webhook ingestion and realtime fan-out.
Main FastAPI application entry point.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from bookon_relay.config import get_settings
from bookon_relay.api.router import api_router
from bookon_relay.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("bookon_relay")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


def build_realtime(app: FastAPI) -> None:
    """Create the process-wide registry, delivery queue and dispatcher on app.state."""
    from bookon_relay.realtime.auth import authenticate_token, authorize_room
    from bookon_relay.realtime.delivery import NotificationDeliveryQueue
    from bookon_relay.realtime.manager import ConnectionManager
    from bookon_relay.services.dispatcher import EventDispatcher
    from bookon_relay.services.handlers import register_default_handlers

    settings = get_settings()
    manager = ConnectionManager(authenticate_token=authenticate_token, authorize_room=authorize_room)
    delivery = NotificationDeliveryQueue(
        manager, maxsize=settings.delivery_queue_size, workers=settings.delivery_workers,
    )
    dispatcher = EventDispatcher(notifier=delivery, settings=settings)
    register_default_handlers(dispatcher)

    app.state.connection_manager = manager
    app.state.delivery_queue = delivery
    app.state.dispatcher = dispatcher


async def announce_shutdown(manager, timeout: float = 5.0) -> int:
    """Tell every open connection the relay is going away. Returns connections reached."""
    from bookon_relay.schemas.notifications import Notification, NotificationKind

    notice = Notification.to_all(NotificationKind.SERVER_RESTART, {
        "message": "Server is restarting - reconnect shortly",
    })
    try:
        reached = await asyncio.wait_for(manager.deliver(notice), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("Restart notice timed out after %ss", timeout)
        return 0
    logger.info("Restart notice sent to %d connections", reached)
    return reached


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    logger.info("BookOn relay starting up (env=%s)", settings.app_env)

    # Security warnings
    if not settings.stripe_webhook_secret:
        logger.warning("STRIPE_WEBHOOK_SECRET not set - payment-provider webhooks will be rejected.")
    if not settings.external_webhook_secret:
        logger.warning("EXTERNAL_WEBHOOK_SECRET not set - external webhooks will be rejected.")
    if not settings.jwt_secret:
        logger.warning(
            "JWT_SECRET not set - falling back to APP_SECRET_KEY for realtime and admin auth."
        )

    # Initialize Sentry if configured
    if settings.sentry_dsn:
        try:
            import sentry_sdk
            sentry_sdk.init(
                dsn=settings.sentry_dsn,
                traces_sample_rate=0.1,
                environment=settings.app_env,
            )
            logger.info("Sentry initialized")
        except Exception as e:
            logger.warning("Sentry initialization failed: %s", str(e))

    build_realtime(app)
    app.state.delivery_queue.start()
    logger.info(
        "Dispatcher ready (%d event types)", len(app.state.dispatcher.registered_types()),
    )

    worker_tasks: list[asyncio.Task] = []

    from bookon_relay.workers.retry_worker import run_retry_worker
    worker_tasks.append(asyncio.create_task(run_retry_worker(app.state.dispatcher)))
    logger.info("Retry worker started")

    yield

    logger.info("BookOn relay shutting down - stopping %d workers...", len(worker_tasks))
    for task in worker_tasks:
        task.cancel()
    if worker_tasks:
        done, pending = await asyncio.wait(worker_tasks, timeout=10.0)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    await app.state.delivery_queue.stop()
    await announce_shutdown(app.state.connection_manager)

    from bookon_relay.database import dispose_engine
    from bookon_relay.utils.cache import close_redis
    await dispose_engine()
    await close_redis()
    logger.info("BookOn relay shutdown complete")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    # Configure structured JSON logging with correlation IDs
    configure_structured_logging(settings.log_level, json_output=settings.app_env != "development")

    application = FastAPI(
        title="BookOn Event Relay",
        description="Webhook ingestion, idempotent side effects and realtime notifications",
        version="1.0.0",
        lifespan=lifespan,
    )

    origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
    application.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["http://localhost:3000", "http://localhost:5173", settings.app_base_url],
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Authorization", "Content-Type", "X-Correlation-ID",
            "Accept", "Origin", "X-Requested-With",
        ],
    )

    # Correlation ID middleware (must be added AFTER CORS so it runs on every request)
    application.add_middleware(CorrelationIdMiddleware)

    application.include_router(api_router)

    return application


app = create_app()
