# src/raffle_room/api/v1/endpoints/__init__.py
"""API endpoint modules for version 1."""

from .admin import router as admin_router
from .raffle import router as raffle_router

__all__ = [
    "admin_router",
    "raffle_router",
]
