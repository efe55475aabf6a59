# src/raffle_room/api/v1/__init__.py
"""Version 1 API endpoints."""

from .endpoints import admin_router, raffle_router

__all__ = [
    "admin_router",
    "raffle_router",
]
