"""Shared record store for the canonical raffle row.

The store is the single source of truth. Writes are filtered by record id and
never versioned, so the last writer wins. After every committed write the
store hands a :class:`ChangeEvent` to its listeners (normally the realtime
bus), which is how participants learn about the new state.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

from sqlalchemy import insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from raffle_room.core.errors import RaffleError, RecordMissing, TransientConnectivity
from raffle_room.db.session import Base, SessionLocal
from raffle_room.models import PublicData
from raffle_room.services.realtime import ChangeEvent, ChangeType
from raffle_room.services.state_machine import RaffleRecord, RaffleState, RecordPatch

# Configure logger for this module
logger = logging.getLogger(__name__)

RAFFLE_TABLE = PublicData.__tablename__

ChangeListener = Callable[[ChangeEvent], Awaitable[None]]


def _to_record(row: PublicData) -> RaffleRecord:
    created_at = row.created_at
    if created_at is not None and created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return RaffleRecord(
        id=row.id,
        created_at=created_at or datetime.now(timezone.utc),
        state=RaffleState(row.state),
        winner=row.winner,
    )


class RecordStore(ABC):
    """Read-one / write-with-filter access to the raffle record."""

    def __init__(self) -> None:
        self._listeners: list[ChangeListener] = []

    def add_listener(self, listener: ChangeListener) -> None:
        """Register a coroutine called with every committed change."""
        self._listeners.append(listener)

    @abstractmethod
    async def fetch_one(self, record_id: int) -> RaffleRecord:
        """Return the record or raise :class:`RecordMissing`."""

    @abstractmethod
    async def update_where(self, record_id: int, patch: RecordPatch) -> RaffleRecord:
        """Apply ``patch`` to the record with ``record_id`` and return the result."""

    @abstractmethod
    async def ensure_record(self, record_id: int) -> RaffleRecord:
        """Create the record in its initial state if it does not exist yet."""

    async def _notify(self, event: ChangeEvent) -> None:
        for listener in list(self._listeners):
            try:
                await listener(event)
            except RaffleError as exc:
                # The write already committed; subscribers will catch up on
                # their next event or cold start.
                logger.warning(
                    "Change notification for %s/%s failed: %s",
                    event.table,
                    event.record_id,
                    exc,
                )


class SqlRecordStore(RecordStore):
    """Record store on top of a SQLAlchemy session factory.

    Session work is blocking, so it runs in a worker thread. Writes and their
    notifications are serialised by one lock, which keeps change events in
    commit order.
    """

    def __init__(self, session_factory: sessionmaker[Session] | None = None) -> None:
        super().__init__()
        self._session_factory = session_factory or SessionLocal
        self._write_lock = asyncio.Lock()

    async def fetch_one(self, record_id: int) -> RaffleRecord:
        try:
            record = await asyncio.to_thread(self._fetch_sync, record_id)
        except SQLAlchemyError as exc:
            raise TransientConnectivity(f"Failed to fetch raffle {record_id}: {exc}") from exc
        if record is None:
            raise RecordMissing(record_id)
        return record

    async def update_where(self, record_id: int, patch: RecordPatch) -> RaffleRecord:
        async with self._write_lock:
            try:
                record = await asyncio.to_thread(self._update_sync, record_id, patch)
            except SQLAlchemyError as exc:
                raise TransientConnectivity(
                    f"Failed to update raffle {record_id}: {exc}"
                ) from exc
            if record is None:
                raise RecordMissing(record_id)
            logger.info(
                "Raffle %s updated: state=%s winner=%s",
                record_id,
                record.state.value,
                record.winner,
            )
            await self._notify(
                ChangeEvent(
                    table=RAFFLE_TABLE,
                    event_type=ChangeType.UPDATE,
                    record_id=record_id,
                    new=record.to_dict(),
                    old={"id": record_id},
                )
            )
        return record

    async def ensure_record(self, record_id: int) -> RaffleRecord:
        """Insert the record in its initial WAITING state unless it already exists."""
        async with self._write_lock:
            try:
                record, created = await asyncio.to_thread(self._ensure_sync, record_id)
            except SQLAlchemyError as exc:
                raise TransientConnectivity(
                    f"Failed to seed raffle {record_id}: {exc}"
                ) from exc
            if created:
                logger.info("Seeded raffle %s in WAITING state", record_id)
                await self._notify(
                    ChangeEvent(
                        table=RAFFLE_TABLE,
                        event_type=ChangeType.INSERT,
                        record_id=record_id,
                        new=record.to_dict(),
                    )
                )
        return record

    async def create_schema(self) -> None:
        """Create the raffle table on the store's database if it is missing."""
        try:
            await asyncio.to_thread(self._create_schema_sync)
        except SQLAlchemyError as exc:
            raise TransientConnectivity(f"Failed to create raffle schema: {exc}") from exc

    def _create_schema_sync(self) -> None:
        with self._session_factory() as db:
            Base.metadata.create_all(bind=db.get_bind())

    def _fetch_sync(self, record_id: int) -> RaffleRecord | None:
        with self._session_factory() as db:
            row = db.execute(
                select(PublicData).where(PublicData.id == record_id)
            ).scalar_one_or_none()
            return _to_record(row) if row is not None else None

    def _update_sync(self, record_id: int, patch: RecordPatch) -> RaffleRecord | None:
        with self._session_factory() as db:
            result = db.execute(
                update(PublicData)
                .where(PublicData.id == record_id)
                .values(**patch.as_values())
            )
            if result.rowcount == 0:
                db.rollback()
                return None
            db.commit()
            row = db.get(PublicData, record_id)
            return _to_record(row) if row is not None else None

    def _ensure_sync(self, record_id: int) -> tuple[RaffleRecord, bool]:
        with self._session_factory() as db:
            row = db.get(PublicData, record_id)
            if row is not None:
                return _to_record(row), False
            db.execute(
                insert(PublicData).values(
                    id=record_id,
                    state=RaffleState.WAITING.value,
                    winner=None,
                )
            )
            db.commit()
            row = db.get(PublicData, record_id)
            if row is None:
                raise RecordMissing(record_id)
            return _to_record(row), True
