"""API router aggregation."""
from fastapi import APIRouter

from app.api.endpoints import history, progress, videos

# Create API router
api_router = APIRouter()

# Include endpoint routers
api_router.include_router(videos.router, tags=["videos"])
api_router.include_router(progress.router, tags=["progress"])
api_router.include_router(history.router, tags=["history"])
