"""Process wiring: one store, one bus and the admin session.

The store's change notifications feed the bus, which is what turns a
committed write into events for every subscriber, the admin included.
"""

from __future__ import annotations

import logging

from raffle_room.core.errors import TransientConnectivity
from raffle_room.core.settings import settings
from raffle_room.services.realtime import InMemoryRealtimeBus, RealtimeBus
from raffle_room.services.record_store import RecordStore, SqlRecordStore
from raffle_room.services.synchronizer import AdminSynchronizer, ClientSynchronizer

# Configure logger for this module
logger = logging.getLogger(__name__)

REALTIME_BACKENDS = ("memory", "redis")


def build_bus(backend: str | None = None) -> RealtimeBus:
    """Return the realtime bus selected by ``REALTIME_BACKEND``."""
    name = (backend or settings.realtime_backend).lower()
    if name == "memory":
        return InMemoryRealtimeBus()
    if name == "redis":
        from raffle_room.services.realtime_redis import RedisRealtimeBus

        return RedisRealtimeBus()
    raise ValueError(
        f"Unknown realtime backend {name!r}; expected one of {', '.join(REALTIME_BACKENDS)}"
    )


class RaffleRuntime:
    """Everything one server process needs to host the raffle."""

    def __init__(
        self,
        store: RecordStore | None = None,
        bus: RealtimeBus | None = None,
        record_id: int | None = None,
        seed: bool | None = None,
    ) -> None:
        self.store = store or SqlRecordStore()
        self.bus = bus or build_bus()
        self.record_id = settings.raffle_id if record_id is None else record_id
        self.seed = settings.seed_raffle_on_startup if seed is None else seed
        self.store.add_listener(self.bus.publish_change)
        self.admin = AdminSynchronizer(self.store, self.bus, record_id=self.record_id)

    async def start(self) -> None:
        if self.seed:
            try:
                if isinstance(self.store, SqlRecordStore):
                    await self.store.create_schema()
                await self.store.ensure_record(self.record_id)
            except TransientConnectivity as exc:
                logger.warning("Could not seed raffle %s: %s", self.record_id, exc)
        await self.admin.attach()

    async def stop(self) -> None:
        await self.admin.detach()
        await self.bus.close()

    def client_session(self, participant_id: str | None = None) -> ClientSynchronizer:
        """Return a new, unattached spectator session on this process's bus."""
        return ClientSynchronizer(
            self.store,
            self.bus,
            record_id=self.record_id,
            participant_id=participant_id,
        )
