# src/raffle_room/main.py
"""Main entry point for the Raffle Room application."""

from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from raffle_room.api.v1 import admin_router, raffle_router
from raffle_room.core.logging import configure_logging
from raffle_room.core.settings import settings
from raffle_room.services.runtime import RaffleRuntime

# Initialize FastAPI app
app = FastAPI(
    title="Raffle Room API",
    description="Live raffle synchronised between one admin and many spectators",
    version=settings.app_version,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

# Add GZip middleware for compression
app.add_middleware(GZipMiddleware)

# Include API routers
app.include_router(raffle_router, prefix="/api/v1")
app.include_router(admin_router, prefix="/api/v1")


@app.on_event("startup")
async def on_startup() -> None:
    configure_logging()
    # A runtime placed on app.state beforehand (tests, embedding) is reused.
    runtime: RaffleRuntime | None = getattr(app.state, "raffle", None)
    if runtime is None:
        runtime = RaffleRuntime()
    await runtime.start()
    app.state.raffle = runtime


@app.on_event("shutdown")
async def on_shutdown() -> None:
    runtime: RaffleRuntime | None = getattr(app.state, "raffle", None)
    if runtime:
        await runtime.stop()
    app.state.raffle = None


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint to verify the service is running."""
    return {"status": "ok"}


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic information about the API."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "channel": settings.raffle_channel_name,
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("raffle_room.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
