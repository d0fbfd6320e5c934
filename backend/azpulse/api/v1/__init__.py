"""API v1 router configuration."""

from fastapi import APIRouter

from azpulse.api.v1 import analytics, syncs, tenants

api_router = APIRouter()

# Include all v1 routers
api_router.include_router(tenants.router, prefix="/tenants", tags=["tenants"])
api_router.include_router(syncs.router, prefix="/syncs", tags=["syncs"])
api_router.include_router(analytics.router, prefix="/analytics", tags=["analytics"])
