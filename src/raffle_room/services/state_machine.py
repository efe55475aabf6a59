"""Raffle state machine.

The raffle moves WAITING -> DRAWING -> DRAWN and back to WAITING on reset.
ERROR is a side-state any participant may fall into locally; only ``reset``
leaves it. Transition planning here is pure: it validates the guard against
the locally observed state and returns the patch to write, nothing more.
Writing the patch and observing its effect is the synchronizer's job.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, assert_never

from raffle_room.core.errors import GuardViolation


class RaffleState(str, Enum):
    """Closed set of states for the shared raffle record."""

    WAITING = "WAITING"
    DRAWING = "DRAWING"
    DRAWN = "DRAWN"
    ERROR = "ERROR"


class Command(str, Enum):
    """Admin-initiated transitions."""

    START_DRAW = "start_draw"
    PICK_WINNER = "pick_winner"
    RESET = "reset"


def _check_winner_invariant(state: RaffleState, winner: str | None) -> None:
    if (winner is not None) != (state is RaffleState.DRAWN):
        raise ValueError(
            f"winner must be set exactly when state is DRAWN (state={state.value}, winner={winner!r})"
        )


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RaffleRecord:
    """Immutable snapshot of the canonical raffle record.

    Local views hold one of these and replace it wholesale on every event.
    """

    id: int
    created_at: datetime
    state: RaffleState
    winner: str | None = None

    def __post_init__(self) -> None:
        _check_winner_invariant(self.state, self.winner)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> RaffleRecord:
        """Build a record from a row mapping or a decoded change payload."""
        return cls(
            id=int(data["id"]),
            created_at=_parse_timestamp(data.get("created_at")),
            state=RaffleState(data["state"]),
            winner=data.get("winner"),
        )

    @classmethod
    def error_placeholder(cls, record_id: int) -> RaffleRecord:
        """Return the local stand-in shown when the real record is unavailable."""
        return cls(
            id=record_id,
            created_at=datetime.now(timezone.utc),
            state=RaffleState.ERROR,
            winner=None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "state": self.state.value,
            "winner": self.winner,
        }


@dataclass(frozen=True)
class RecordPatch:
    """Fields written by a transition. Always sets state and winner together."""

    state: RaffleState
    winner: str | None = None

    def __post_init__(self) -> None:
        _check_winner_invariant(self.state, self.winner)

    def as_values(self) -> dict[str, Any]:
        return {"state": self.state.value, "winner": self.winner}


def plan_transition(
    command: Command,
    current: RaffleState,
    winner: str | None = None,
) -> RecordPatch:
    """Validate ``command`` against ``current`` and return the patch to write.

    Args:
        command: Transition requested by the admin.
        current: State of the admin's local view at the time of the request.
        winner: Participant chosen by the winner selector; required for
            ``pick_winner`` and ignored otherwise.

    Raises:
        GuardViolation: If the transition is not allowed from ``current`` or
            ``pick_winner`` has no winner to record.
    """
    if command is Command.START_DRAW:
        if current is not RaffleState.WAITING:
            raise GuardViolation(
                f"Can only start when in WAITING state (current state: {current.value})"
            )
        return RecordPatch(state=RaffleState.DRAWING, winner=None)
    if command is Command.PICK_WINNER:
        if current is not RaffleState.DRAWING:
            raise GuardViolation(
                f"Can only pick winner during DRAWING state (current state: {current.value})"
            )
        if winner is None:
            raise GuardViolation("No users connected to pick a winner from.")
        return RecordPatch(state=RaffleState.DRAWN, winner=winner)
    if command is Command.RESET:
        return RecordPatch(state=RaffleState.WAITING, winner=None)
    assert_never(command)


def status_message(state: RaffleState) -> str:
    """Return the spectator-facing line describing ``state``."""
    if state is RaffleState.WAITING:
        return "Waiting for the raffle to start..."
    if state is RaffleState.DRAWING:
        return "Drawing in progress... Good luck!"
    if state is RaffleState.DRAWN:
        return "The winner has been drawn."
    if state is RaffleState.ERROR:
        return "Connection error. Please refresh."
    assert_never(state)


def is_winner(record: RaffleRecord | None, participant_id: str) -> bool:
    """Return True when ``participant_id`` is the drawn winner of ``record``."""
    if record is None:
        return False
    return record.state is RaffleState.DRAWN and record.winner == participant_id
