"""
API router - aggregates all route modules.
"""
from fastapi import APIRouter
from bookon_relay.api.webhooks import router as webhooks_router
from bookon_relay.api.admin_events import router as admin_events_router
from bookon_relay.api.health import router as health_router
from bookon_relay.realtime.router import router as realtime_router

api_router = APIRouter()
api_router.include_router(webhooks_router)
api_router.include_router(admin_events_router)
api_router.include_router(health_router)
api_router.include_router(realtime_router)
