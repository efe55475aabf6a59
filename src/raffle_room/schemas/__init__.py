# src/raffle_room/schemas/__init__.py
"""
Pydantic schemas for API request/response models.

These schemas define the structure of API data for serialization and validation.
"""

from .raffle import (
    AdminStatusResponse,
    CommandAccepted,
    ParticipantResponse,
    RaffleRecordResponse,
    SpectatorFrame,
)

__all__ = [
    "AdminStatusResponse",
    "CommandAccepted",
    "ParticipantResponse",
    "RaffleRecordResponse",
    "SpectatorFrame",
]
