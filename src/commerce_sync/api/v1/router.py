"""API v1 router that aggregates all endpoint routers."""

from fastapi import APIRouter

from commerce_sync.api.v1 import backfill, health, webhooks

api_router = APIRouter()

# Include all routers
api_router.include_router(
    health.router,
    tags=["Health"],
)

api_router.include_router(
    webhooks.router,
    prefix="/webhooks",
    tags=["Webhooks"],
)

api_router.include_router(
    backfill.router,
    prefix="/backfill",
    tags=["Backfill"],
)
