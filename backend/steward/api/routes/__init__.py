from fastapi import APIRouter

from steward.api.routes import billing, health, platform, webhooks

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(billing.router, tags=["billing"])
api_router.include_router(platform.router, tags=["platform"])
api_router.include_router(webhooks.router, tags=["webhooks"])
