"""API router aggregator."""

from fastapi import APIRouter

from .realtime import router as realtime_router
from .sessions import router as sessions_router

api_router = APIRouter()
api_router.include_router(sessions_router)
api_router.include_router(realtime_router)

__all__ = ["api_router"]
