"""API routers for the P2P escrow backend."""
from fastapi import APIRouter

from . import health, rooms, trades


def get_api_router() -> APIRouter:
    """Return the root API router."""

    api_router = APIRouter()
    api_router.include_router(health.router)
    api_router.include_router(trades.router)
    api_router.include_router(trades.actions_router)
    api_router.include_router(rooms.router)
    return api_router
