"""Main API router that aggregates all route modules."""

from fastapi import APIRouter

from latchkey.api import admin, auth, health

api_router = APIRouter()

# Include all route modules
api_router.include_router(health.router, prefix="/health", tags=["health"])
api_router.include_router(auth.router, prefix="/auth", tags=["auth"])

# Admin endpoints
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
