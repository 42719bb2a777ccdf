"""Master API router."""

from fastapi import APIRouter

from incident_bridge.api.routes import health, manual_sync, webhooks

api_router = APIRouter()
api_router.include_router(health.router)
api_router.include_router(webhooks.router)
api_router.include_router(manual_sync.router)
