from fastapi import APIRouter

from .v1.endpoints import admin, cron, gifts, health, webhooks


api_router = APIRouter(prefix="/api/v1")
api_router.include_router(health.router, tags=["Health"])
api_router.include_router(gifts.router)
api_router.include_router(cron.router)
api_router.include_router(webhooks.router)
api_router.include_router(admin.router)
