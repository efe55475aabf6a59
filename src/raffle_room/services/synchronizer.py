"""Synchronizers keep a participant's local view in line with the shared record.

Each participant (the admin, or one spectator session) owns one synchronizer.
It subscribes to the raffle channel, fetches the record once, then replaces
its view wholesale with every record delivered by the bus. Views are
immutable :class:`RaffleView` snapshots, so an observer never sees a state
from one event paired with a winner from another.

The admin variant issues transitions and reads the presence registry to pick
a winner. The client variant registers its own presence once the channel is
active and derives whether it has won.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Collection, Coroutine
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from types import TracebackType
from typing import Any, assert_never

from raffle_room.core.errors import (
    GuardViolation,
    RaffleError,
    RecordMissing,
    TransientConnectivity,
)
from raffle_room.core.settings import settings
from raffle_room.services.identity import generate_participant_id
from raffle_room.services.presence import PresenceRegistry, PresenceState
from raffle_room.services.realtime import (
    ChangeEvent,
    ChangeFilter,
    ChangeType,
    Channel,
    ChannelStatus,
    RealtimeBus,
)
from raffle_room.services.record_store import RAFFLE_TABLE, RecordStore
from raffle_room.services.state_machine import (
    Command,
    RaffleRecord,
    RaffleState,
    is_winner,
    plan_transition,
)
from raffle_room.services.winner import select

# Configure logger for this module
logger = logging.getLogger(__name__)

_COMMAND_LABELS = {
    Command.START_DRAW: "start draw",
    Command.PICK_WINNER: "pick winner",
    Command.RESET: "reset raffle",
}


@dataclass(frozen=True)
class RaffleView:
    """What one participant currently believes about the raffle."""

    record: RaffleRecord | None = None
    loading: bool = False
    error: str | None = None

    @property
    def state(self) -> RaffleState:
        return self.record.state if self.record is not None else RaffleState.WAITING

    @property
    def winner(self) -> str | None:
        return self.record.winner if self.record is not None else None


ViewListener = Callable[[RaffleView], None]


class Synchronizer(ABC):
    """Shared attach/apply/detach behaviour for admin and client sessions."""

    role = "participant"

    def __init__(
        self,
        store: RecordStore,
        bus: RealtimeBus,
        record_id: int | None = None,
        channel_name: str | None = None,
    ) -> None:
        self.store = store
        self.bus = bus
        self.record_id = settings.raffle_id if record_id is None else record_id
        self.channel_name = channel_name or settings.raffle_channel_name
        self.presence = PresenceRegistry()
        self._view = RaffleView()
        self._channel: Channel | None = None
        self._listeners: list[ViewListener] = []
        self._tasks: set[asyncio.Task[Any]] = set()
        self._attached = False
        self._detached = False
        self._connection_lost = False
        # Bumped for every applied change event; fetch results older than an
        # applied event are discarded.
        self._change_seq = 0

    @property
    def view(self) -> RaffleView:
        return self._view

    @property
    def channel(self) -> Channel | None:
        return self._channel

    @property
    def detached(self) -> bool:
        return self._detached

    def add_listener(self, listener: ViewListener) -> None:
        """Call ``listener`` with the new view after every change."""
        self._listeners.append(listener)

    async def __aenter__(self) -> Synchronizer:
        await self.attach()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.detach()

    async def attach(self) -> None:
        """Subscribe to the raffle channel and load the current record."""
        if self._attached:
            return
        self._attached = True
        logger.info("%s attaching to %s", self.role.capitalize(), self.channel_name)
        self._set_view(loading=True, error=None)

        channel = self._open_channel()
        channel.on_change(
            ChangeFilter(table=RAFFLE_TABLE, record_id=self.record_id),
            self._handle_change,
        )
        channel.on_presence_sync(self._handle_presence_sync)
        channel.on_presence_join(PresenceRegistry.log_join)
        channel.on_presence_leave(PresenceRegistry.log_leave)
        channel.on_status(self._handle_status)
        self._channel = channel
        await channel.subscribe()

        await self._cold_start()

    async def detach(self) -> None:
        """Stop applying events and release presence and the channel.

        In-flight fetches and writes are left to finish; their results are
        dropped. Release failures are logged and never raised.
        """
        if self._detached:
            return
        self._detached = True
        channel, self._channel = self._channel, None
        self.presence.clear()
        logger.info("%s detaching from %s", self.role.capitalize(), self.channel_name)
        if channel is None:
            return
        await self._release_presence(channel)
        try:
            ack = await self.bus.close_channel(channel)
            logger.debug("Channel %s removed: %s", channel.topic, ack)
        except Exception:
            logger.error("Error removing channel %s", channel.topic, exc_info=True)

    @abstractmethod
    def _open_channel(self) -> Channel:
        """Create the unsubscribed channel for this participant."""

    async def _release_presence(self, channel: Channel) -> None:
        """Undo whatever presence this participant registered."""

    def _on_connection_error(self, status: ChannelStatus, error: Exception | None) -> None:
        """React to a channel error or timeout."""

    def _on_active(self) -> None:
        """React to the channel becoming (or becoming again) active."""

    async def _cold_start(self) -> None:
        seq = self._change_seq
        try:
            record = await self.store.fetch_one(self.record_id)
        except (RecordMissing, TransientConnectivity) as exc:
            if self._detached:
                return
            logger.error("%s: error fetching initial state: %s", self.role.capitalize(), exc)
            if seq == self._change_seq:
                self._set_view(
                    record=RaffleRecord.error_placeholder(self.record_id),
                    loading=False,
                    error=f"Failed to fetch initial state: {exc}",
                )
            else:
                self._set_view(loading=False)
            return

        if self._detached:
            return
        logger.info(
            "%s initial state fetched: %s", self.role.capitalize(), record.state.value
        )
        if seq == self._change_seq:
            self._set_view(record=record, loading=False)
        else:
            self._set_view(loading=False)

    async def _refresh(self) -> None:
        """Re-read the record after a reconnect, unless an event got there first."""
        seq = self._change_seq
        try:
            record = await self.store.fetch_one(self.record_id)
        except RaffleError as exc:
            logger.warning("Re-sync of raffle %s failed: %s", self.record_id, exc)
            return
        if self._detached or seq != self._change_seq:
            return
        self._apply_record(record)

    def _handle_change(self, event: ChangeEvent) -> None:
        if self._detached:
            return
        logger.debug("%s: change received: %s", self.role.capitalize(), event.event_type.value)
        self._change_seq += 1

        if event.event_type is ChangeType.DELETE:
            message = f"Raffle data (ID: {self.record_id}) was deleted."
            logger.error(message)
            self._set_view(record=RaffleRecord.error_placeholder(self.record_id), error=message)
            return

        try:
            record = RaffleRecord.from_mapping(event.new)
        except (KeyError, TypeError, ValueError) as exc:
            logger.error("Ignoring malformed change for raffle %s: %s", self.record_id, exc)
            return
        self._apply_record(record)

    def _apply_record(self, record: RaffleRecord) -> None:
        # One replacement: state and winner always change together.
        self._set_view(record=record, error=None)

    def _handle_presence_sync(self, state: PresenceState) -> None:
        if self._detached:
            return
        snapshot = self.presence.rebuild(state)
        logger.debug("%s: presence sync, %d connected", self.role.capitalize(), len(snapshot))
        self._notify()

    def _handle_status(self, status: ChannelStatus, error: Exception | None) -> None:
        if self._detached:
            return
        logger.info("%s channel %s status: %s", self.role.capitalize(), self.channel_name, status.value)
        if status is ChannelStatus.ACTIVE:
            if self._connection_lost:
                self._connection_lost = False
                self._spawn(self._refresh())
            self._on_active()
        elif status is ChannelStatus.CLOSED:
            logger.warning("%s channel %s closed.", self.role.capitalize(), self.channel_name)
        elif status is ChannelStatus.ERROR or status is ChannelStatus.TIMED_OUT:
            self._connection_lost = True
            self._on_connection_error(status, error)
        else:
            assert_never(status)

    def _set_view(self, **changes: Any) -> None:
        self._view = replace(self._view, **changes)
        self._notify()

    def _notify(self) -> None:
        view = self._view
        for listener in list(self._listeners):
            try:
                listener(view)
            except Exception:
                logger.error("View listener raised", exc_info=True)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task


class AdminSynchronizer(Synchronizer):
    """The operator's session: observes the raffle and issues transitions.

    The admin never registers presence and never writes ``ERROR`` to the
    shared record; connection problems only set a local, dismissible error.
    """

    role = "admin"

    def __init__(
        self,
        store: RecordStore,
        bus: RealtimeBus,
        record_id: int | None = None,
        channel_name: str | None = None,
        selector: Callable[[Collection[str]], str] = select,
    ) -> None:
        super().__init__(store, bus, record_id, channel_name)
        self._selector = selector
        self._in_flight: Command | None = None

    @property
    def in_flight(self) -> Command | None:
        return self._in_flight

    async def start_draw(self) -> None:
        await self._run(Command.START_DRAW)

    async def pick_winner(self) -> None:
        await self._run(Command.PICK_WINNER)

    async def reset(self) -> None:
        await self._run(Command.RESET)

    def dismiss_error(self) -> None:
        if self._view.error is not None:
            self._set_view(error=None)

    def _open_channel(self) -> Channel:
        return self.bus.open_channel(self.channel_name)

    def _on_active(self) -> None:
        if self._view.error is not None and self._view.record is not None:
            if self._view.record.state is not RaffleState.ERROR:
                self._set_view(error=None)

    def _on_connection_error(self, status: ChannelStatus, error: Exception | None) -> None:
        detail = f": {error}" if error is not None else ""
        message = f"Channel Error: {status.value}{detail}. Realtime updates might be interrupted."
        logger.error(message)
        self._set_view(error=message)

    async def _run(self, command: Command) -> None:
        label = _COMMAND_LABELS[command]
        if self._detached:
            raise GuardViolation(f"Cannot {label}: admin session is detached")
        if self._in_flight is not None or self._view.loading:
            busy = self._in_flight.value if self._in_flight is not None else "initial load"
            raise GuardViolation(f"Cannot {label}: {busy} is still in progress")
        if command is not Command.RESET and self._view.error is not None:
            raise GuardViolation(f"Cannot {label} while an error is shown: {self._view.error}")

        current = self._view.state
        winner: str | None = None
        if command is Command.PICK_WINNER and current is RaffleState.DRAWING:
            # The snapshot checked for emptiness is the one the pick is made from.
            candidates = self.presence.snapshot()
            if candidates:
                winner = self._selector(candidates)
                logger.info("Admin: selected winner ID: %s", winner)
            else:
                logger.warning("Admin: attempted to pick winner with no users.")
        patch = plan_transition(command, current, winner)

        self._in_flight = command
        self._set_view(loading=True, error=None)
        logger.info("Admin: %s requested", command.value)
        try:
            await self.store.update_where(self.record_id, patch)
        except (RecordMissing, TransientConnectivity) as exc:
            logger.error("Admin error during %s: %s", command.value, exc)
            if not self._detached:
                self._set_view(error=f"Failed to {label}: {exc}")
            raise
        finally:
            self._in_flight = None
            if not self._detached:
                self._set_view(loading=False)
        logger.info("Admin: %s written; waiting for change event", command.value)


class ClientSynchronizer(Synchronizer):
    """A spectator's session.

    Presence is registered only after the channel reports ACTIVE, and only
    once per session; teardown removes it before closing the channel.
    """

    role = "client"

    def __init__(
        self,
        store: RecordStore,
        bus: RealtimeBus,
        record_id: int | None = None,
        channel_name: str | None = None,
        participant_id: str | None = None,
    ) -> None:
        super().__init__(store, bus, record_id, channel_name)
        self.participant_id = participant_id or generate_participant_id()
        self._presence_registered = False
        self._track_task: asyncio.Task[Any] | None = None

    @property
    def is_winner(self) -> bool:
        return is_winner(self._view.record, self.participant_id)

    @property
    def presence_registered(self) -> bool:
        return self._presence_registered

    def _open_channel(self) -> Channel:
        return self.bus.open_channel(self.channel_name, presence_key=self.participant_id)

    def _on_active(self) -> None:
        if self._presence_registered:
            return
        if self._track_task is not None and not self._track_task.done():
            return
        channel = self._channel
        if channel is not None:
            self._track_task = self._spawn(self._register_presence(channel))

    def _on_connection_error(self, status: ChannelStatus, error: Exception | None) -> None:
        logger.error("Client channel %s error: %s %s", self.channel_name, status.value, error or "")
        self._set_view(
            record=RaffleRecord.error_placeholder(self.record_id),
            error=f"Connection error ({status.value}). Please refresh.",
        )

    async def _register_presence(self, channel: Channel) -> None:
        payload = {
            "user": self.participant_id,
            "online_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            ack = await channel.track_presence(payload)
        except RaffleError as exc:
            logger.warning("Presence tracking for %s failed: %s", self.participant_id, exc)
            return
        # Recorded even after detach so teardown knows to untrack.
        self._presence_registered = True
        logger.info("Client presence tracking status for %s: %s", self.participant_id, ack)

    async def _release_presence(self, channel: Channel) -> None:
        track_task = self._track_task
        if track_task is not None and not track_task.done():
            # Let a pending registration land so it can be undone below.
            try:
                await track_task
            except asyncio.CancelledError:
                logger.warning("Pending presence registration for %s was cancelled", self.participant_id)
            except Exception:
                logger.error("Pending presence registration failed", exc_info=True)
        if not self._presence_registered:
            return
        try:
            ack = await channel.untrack_presence()
            self._presence_registered = False
            logger.info("Presence untracked for %s: %s", self.participant_id, ack)
        except Exception:
            logger.error("Error untracking presence for %s", self.participant_id, exc_info=True)
