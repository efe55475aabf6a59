# src/raffle_room/api/v1/endpoints/raffle.py
"""Spectator-facing raffle endpoints."""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect, status

from raffle_room.core.errors import RecordMissing, TransientConnectivity
from raffle_room.schemas.raffle import RaffleRecordResponse, SpectatorFrame
from raffle_room.services.runtime import RaffleRuntime
from raffle_room.services.state_machine import status_message
from raffle_room.services.synchronizer import ClientSynchronizer, RaffleView

from .dependencies import RuntimeDep

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/raffle", tags=["raffle"])


def build_frame(client: ClientSynchronizer, view: RaffleView) -> SpectatorFrame:
    """Project a client's view into what the spectator is shown."""
    return SpectatorFrame(
        participant_id=client.participant_id,
        state=view.state.value,
        winner=view.winner,
        is_winner=client.is_winner,
        loading=view.loading,
        error=view.error,
        message=status_message(view.state),
    )


@router.get("", response_model=RaffleRecordResponse)
async def get_raffle(runtime: RuntimeDep) -> RaffleRecordResponse:
    """Return the shared record exactly as the store holds it."""
    try:
        record = await runtime.store.fetch_one(runtime.record_id)
    except RecordMissing as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except TransientConnectivity as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(exc),
        ) from exc
    return RaffleRecordResponse.model_validate(record.to_dict())


@router.websocket("/ws")
async def spectate(websocket: WebSocket) -> None:
    """Attach a spectator session for as long as the socket stays open."""
    runtime: RaffleRuntime | None = getattr(websocket.app.state, "raffle", None)
    if runtime is None:
        await websocket.close(code=1013)
        return
    await websocket.accept()

    client = runtime.client_session()
    frames: asyncio.Queue[SpectatorFrame] = asyncio.Queue()
    last_sent: list[SpectatorFrame] = []

    def enqueue(view: RaffleView) -> None:
        frame = build_frame(client, view)
        if last_sent and last_sent[-1] == frame:
            return
        last_sent[:] = [frame]
        frames.put_nowait(frame)

    async def send_frames() -> None:
        while True:
            frame = await frames.get()
            await websocket.send_json(frame.model_dump(mode="json"))

    client.add_listener(enqueue)
    sender = asyncio.create_task(send_frames())
    try:
        await client.attach()
        enqueue(client.view)
        while True:
            # Spectators are read-only; anything they send is ignored.
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info("Spectator %s disconnected", client.participant_id)
    finally:
        sender.cancel()
        try:
            await sender
        except (asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
            pass
        await client.detach()
