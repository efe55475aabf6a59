# tests/conftest.py
from __future__ import annotations

import asyncio
import os
from collections.abc import Callable, Iterator
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

os.environ.setdefault("PYTEST_RUNNING", "true")

from raffle_room.db.session import Base
from raffle_room.main import app as fastapi_app
from raffle_room.models import PublicData
from raffle_room.services.realtime import InMemoryRealtimeBus
from raffle_room.services.record_store import SqlRecordStore
from raffle_room.services.runtime import RaffleRuntime

RAFFLE_ID = 1
CHANNEL_NAME = f"raffle-room-{RAFFLE_ID}"


@pytest.fixture()
def engine(tmp_path) -> Iterator[Engine]:
    # A file database gives every worker thread its own connection.
    engine = create_engine(
        f"sqlite:///{tmp_path / 'raffle.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def seed_record(session_factory: sessionmaker[Session]) -> Callable[..., None]:
    """Write the raffle row directly, bypassing the store and its notifications."""

    def _seed(state: str = "WAITING", winner: str | None = None) -> None:
        with session_factory() as db:
            db.merge(PublicData(id=RAFFLE_ID, state=state, winner=winner))
            db.commit()

    _seed()
    return _seed


@pytest.fixture()
def bus() -> InMemoryRealtimeBus:
    return InMemoryRealtimeBus()


@pytest.fixture()
def store(session_factory: sessionmaker[Session], seed_record: Callable[..., None]) -> SqlRecordStore:
    """Store over the seeded test database, not yet connected to any bus."""
    return SqlRecordStore(session_factory)


@pytest.fixture()
def wired_store(store: SqlRecordStore, bus: InMemoryRealtimeBus) -> SqlRecordStore:
    """Store whose committed writes are published on ``bus``."""
    store.add_listener(bus.publish_change)
    return store


@pytest.fixture()
def runtime(store: SqlRecordStore, bus: InMemoryRealtimeBus) -> RaffleRuntime:
    return RaffleRuntime(store=store, bus=bus, record_id=RAFFLE_ID, seed=False)


@pytest.fixture()
def app(runtime: RaffleRuntime) -> Iterator[FastAPI]:
    fastapi_app.state.raffle = runtime
    try:
        yield fastapi_app
    finally:
        fastapi_app.state.raffle = None


@pytest.fixture()
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app, base_url="http://test") as test_client:
        yield test_client


@pytest.fixture()
def settle(bus: InMemoryRealtimeBus) -> Callable[..., Any]:
    """Return a coroutine that waits for the bus and the given sessions to go idle."""

    async def _settle(*sessions: Any) -> None:
        for _ in range(20):
            await bus.drain()
            pending = [task for session in sessions for task in session._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)
        await bus.drain()

    return _settle
