# src/raffle_room/services/__init__.py
"""Raffle protocol services: state machine, presence, bus, store and synchronizers."""

from .presence import PresenceRegistry
from .realtime import InMemoryRealtimeBus, RealtimeBus
from .record_store import RecordStore, SqlRecordStore
from .runtime import RaffleRuntime
from .synchronizer import AdminSynchronizer, ClientSynchronizer, RaffleView

__all__ = [
    "AdminSynchronizer",
    "ClientSynchronizer",
    "InMemoryRealtimeBus",
    "PresenceRegistry",
    "RaffleRuntime",
    "RaffleView",
    "RealtimeBus",
    "RecordStore",
    "SqlRecordStore",
]
