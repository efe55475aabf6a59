# src/raffle_room/models/__init__.py
"""SQLAlchemy models for the Raffle Room application."""

from .raffle import RAFFLE_STATES, PublicData

__all__ = ["PublicData", "RAFFLE_STATES"]
