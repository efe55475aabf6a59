# src/raffle_room/schemas/raffle.py
"""Raffle-related Pydantic schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class RaffleRecordResponse(BaseModel):
    """The shared raffle record as stored."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    created_at: datetime
    state: str = Field(..., description="WAITING, DRAWING, DRAWN or ERROR")
    winner: str | None = Field(None, description="Winning participant id once DRAWN")


class ParticipantResponse(BaseModel):
    """A participant currently present on the raffle channel."""

    model_config = ConfigDict(from_attributes=True)

    participant_id: str
    connected_at: datetime | None = None


class AdminStatusResponse(BaseModel):
    """The admin session's local view plus the eligible participants."""

    record: RaffleRecordResponse | None
    state: str
    winner: str | None
    loading: bool
    error: str | None
    in_flight: str | None = Field(None, description="Command currently awaiting the store")
    connected: list[ParticipantResponse]
    eligible_count: int


class CommandAccepted(BaseModel):
    """Acknowledgement that a transition was written to the store.

    The resulting state reaches every participant as a change event.
    """

    command: str
    status: str = "accepted"


class SpectatorFrame(BaseModel):
    """Frame pushed to a spectator over the WebSocket."""

    participant_id: str
    state: str
    winner: str | None
    is_winner: bool
    loading: bool
    error: str | None = None
    message: str
