"""Shared FastAPI dependencies for the raffle endpoints."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from raffle_room.services.runtime import RaffleRuntime


def get_runtime(request: Request) -> RaffleRuntime:
    """Return the runtime created at application startup."""
    runtime: RaffleRuntime | None = getattr(request.app.state, "raffle", None)
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Raffle runtime is not running",
        )
    return runtime


RuntimeDep = Annotated[RaffleRuntime, Depends(get_runtime)]
