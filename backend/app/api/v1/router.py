"""API v1 router aggregation."""
from fastapi import APIRouter

from app.api.v1.endpoints import media, progress

# Create v1 router
api_router = APIRouter()

# Include endpoint routers
api_router.include_router(media.router, tags=["media"])
api_router.include_router(progress.router, tags=["progress"])
