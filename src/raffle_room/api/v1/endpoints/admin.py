# src/raffle_room/api/v1/endpoints/admin.py
"""Admin control endpoints.

Commands return as soon as the store accepted the write. The new state is
observed through the admin's own channel, like every other participant.
"""

from collections.abc import Awaitable, Callable

from fastapi import APIRouter, HTTPException, Response, status

from raffle_room.core.errors import GuardViolation, RecordMissing, TransientConnectivity
from raffle_room.schemas.raffle import (
    AdminStatusResponse,
    CommandAccepted,
    ParticipantResponse,
    RaffleRecordResponse,
)
from raffle_room.services.state_machine import Command

from .dependencies import RuntimeDep

router = APIRouter(prefix="/admin", tags=["admin"])


async def _issue(command: Command, action: Callable[[], Awaitable[None]]) -> CommandAccepted:
    try:
        await action()
    except GuardViolation as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RecordMissing as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except TransientConnectivity as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(exc),
        ) from exc
    return CommandAccepted(command=command.value)


@router.get("/status", response_model=AdminStatusResponse)
async def get_admin_status(runtime: RuntimeDep) -> AdminStatusResponse:
    """Return the admin's local view and who is eligible to win."""
    admin = runtime.admin
    view = admin.view
    participants = admin.presence.participants()
    return AdminStatusResponse(
        record=(
            RaffleRecordResponse.model_validate(view.record.to_dict())
            if view.record is not None
            else None
        ),
        state=view.state.value,
        winner=view.winner,
        loading=view.loading,
        error=view.error,
        in_flight=admin.in_flight.value if admin.in_flight is not None else None,
        connected=[
            ParticipantResponse(
                participant_id=participant.participant_id,
                connected_at=participant.connected_at,
            )
            for participant in participants
        ],
        eligible_count=len(participants),
    )


@router.post(
    "/start-draw",
    response_model=CommandAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_draw(runtime: RuntimeDep) -> CommandAccepted:
    """Move the raffle from WAITING to DRAWING."""
    return await _issue(Command.START_DRAW, runtime.admin.start_draw)


@router.post(
    "/pick-winner",
    response_model=CommandAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def pick_winner(runtime: RuntimeDep) -> CommandAccepted:
    """Draw a winner from the participants currently present."""
    return await _issue(Command.PICK_WINNER, runtime.admin.pick_winner)


@router.post(
    "/reset",
    response_model=CommandAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def reset_raffle(runtime: RuntimeDep) -> CommandAccepted:
    """Return the raffle to WAITING and clear the winner."""
    return await _issue(Command.RESET, runtime.admin.reset)


@router.post("/dismiss-error", status_code=status.HTTP_204_NO_CONTENT)
async def dismiss_error(runtime: RuntimeDep) -> Response:
    """Clear the admin's local error message."""
    runtime.admin.dismiss_error()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
