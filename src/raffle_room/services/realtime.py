"""Realtime bus: named channels carrying change events and presence.

A channel is opened per raffle instance. Subscribers register handlers for
record changes, presence sync/join/leave and connection status, then call
``subscribe()``. Handlers are plain callbacks invoked one at a time in
delivery order; a handler that needs to await something starts its own task.

Two backends exist: :class:`InMemoryRealtimeBus` below, which fans events out
inside one process, and ``RedisRealtimeBus`` in ``realtime_redis``.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from raffle_room.core.errors import ChannelFailure
from raffle_room.services.presence import PresenceState

# Configure logger for this module
logger = logging.getLogger(__name__)

ACK_OK = "ok"


class ChannelStatus(str, Enum):
    """Connection status reported for a subscribed channel."""

    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"
    ERROR = "ERROR"
    TIMED_OUT = "TIMED_OUT"


class ChangeType(str, Enum):
    """Kind of row change delivered by the store."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class ChangeEvent:
    """A committed change to one row of a table."""

    table: str
    event_type: ChangeType
    record_id: int
    new: Mapping[str, Any] = field(default_factory=dict)
    old: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "event_type": self.event_type.value,
            "record_id": self.record_id,
            "new": dict(self.new),
            "old": dict(self.old),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ChangeEvent:
        return cls(
            table=str(data["table"]),
            event_type=ChangeType(data["event_type"]),
            record_id=int(data["record_id"]),
            new=dict(data.get("new") or {}),
            old=dict(data.get("old") or {}),
        )


@dataclass(frozen=True)
class ChangeFilter:
    """Selects the change events a handler wants to see."""

    table: str
    record_id: int | None = None
    events: frozenset[ChangeType] = frozenset(ChangeType)

    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table or event.event_type not in self.events:
            return False
        return self.record_id is None or event.record_id == self.record_id


ChangeHandler = Callable[[ChangeEvent], None]
PresenceSyncHandler = Callable[[PresenceState], None]
PresenceDiffHandler = Callable[[str, list[dict[str, Any]]], None]
StatusHandler = Callable[[ChannelStatus, Exception | None], None]


class Channel(ABC):
    """One participant's attachment to a named topic.

    Handler registration and dispatch live here; transport-specific work
    (subscribing, tracking presence) is left to the backends.
    """

    def __init__(self, topic: str, presence_key: str | None = None) -> None:
        self.topic = topic
        self.presence_key = presence_key or f"anon-{secrets.token_hex(6)}"
        self.status: ChannelStatus | None = None
        self._change_handlers: list[tuple[ChangeFilter, ChangeHandler]] = []
        self._sync_handlers: list[PresenceSyncHandler] = []
        self._join_handlers: list[PresenceDiffHandler] = []
        self._leave_handlers: list[PresenceDiffHandler] = []
        self._status_handlers: list[StatusHandler] = []

    def on_change(self, change_filter: ChangeFilter, handler: ChangeHandler) -> Channel:
        self._change_handlers.append((change_filter, handler))
        return self

    def on_presence_sync(self, handler: PresenceSyncHandler) -> Channel:
        self._sync_handlers.append(handler)
        return self

    def on_presence_join(self, handler: PresenceDiffHandler) -> Channel:
        self._join_handlers.append(handler)
        return self

    def on_presence_leave(self, handler: PresenceDiffHandler) -> Channel:
        self._leave_handlers.append(handler)
        return self

    def on_status(self, handler: StatusHandler) -> Channel:
        self._status_handlers.append(handler)
        return self

    @property
    def subscribed(self) -> bool:
        return self.status is ChannelStatus.ACTIVE

    @abstractmethod
    async def subscribe(self) -> ChannelStatus:
        """Activate the channel; the resulting status is also sent to status handlers."""

    @abstractmethod
    async def track_presence(self, payload: Mapping[str, Any]) -> str:
        """Register this session's presence payload and return the bus acknowledgement."""

    @abstractmethod
    async def untrack_presence(self) -> str:
        """Remove this session's presence payload and return the bus acknowledgement."""

    def _dispatch_change(self, event: ChangeEvent) -> None:
        for change_filter, handler in list(self._change_handlers):
            if change_filter.matches(event):
                self._invoke(handler, event)

    def _dispatch_sync(self, state: PresenceState) -> None:
        for handler in list(self._sync_handlers):
            self._invoke(handler, state)

    def _dispatch_join(self, key: str, presences: list[dict[str, Any]]) -> None:
        for handler in list(self._join_handlers):
            self._invoke(handler, key, presences)

    def _dispatch_leave(self, key: str, presences: list[dict[str, Any]]) -> None:
        for handler in list(self._leave_handlers):
            self._invoke(handler, key, presences)

    def _dispatch_status(self, status: ChannelStatus, error: Exception | None = None) -> None:
        self.status = status
        logger.debug("Channel %s status: %s", self.topic, status.value)
        for handler in list(self._status_handlers):
            self._invoke(handler, status, error)

    def _invoke(self, handler: Callable[..., None], *args: Any) -> None:
        try:
            handler(*args)
        except Exception:
            logger.error("Handler on channel %s raised", self.topic, exc_info=True)


class RealtimeBus(ABC):
    """Factory and fan-out point for channels."""

    @abstractmethod
    def open_channel(self, name: str, presence_key: str | None = None) -> Channel:
        """Create an unsubscribed channel attached to topic ``name``."""

    @abstractmethod
    async def close_channel(self, channel: Channel) -> str:
        """Release ``channel`` and any presence it still holds."""

    @abstractmethod
    async def publish_change(self, event: ChangeEvent) -> None:
        """Deliver a committed store change to every matching subscriber."""

    async def close(self) -> None:
        """Release backend resources."""


_STOP = object()


class InMemoryChannel(Channel):
    """Channel whose events are delivered through a private asyncio queue."""

    def __init__(self, bus: InMemoryRealtimeBus, topic: str, presence_key: str | None) -> None:
        super().__init__(topic, presence_key)
        self._bus = bus
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._pump_task: asyncio.Task[None] | None = None
        self._tracked: dict[str, Any] | None = None
        self._closed = False

    async def subscribe(self) -> ChannelStatus:
        if self._closed:
            raise ChannelFailure(f"Channel {self.topic} is closed")
        if self._pump_task is None:
            self._pump_task = asyncio.create_task(self._pump())
            self._bus._attach(self)
        return ChannelStatus.ACTIVE

    async def track_presence(self, payload: Mapping[str, Any]) -> str:
        if self._pump_task is None or self._closed:
            raise ChannelFailure(
                f"Cannot track presence on {self.topic} before the channel is subscribed"
            )
        self._tracked = {**payload, "presence_ref": secrets.token_hex(8)}
        self._bus._presence_changed(self.topic, joined=(self.presence_key, [self._tracked]))
        return ACK_OK

    async def untrack_presence(self) -> str:
        if self._tracked is None:
            return ACK_OK
        left = self._tracked
        self._tracked = None
        self._bus._presence_changed(self.topic, left=(self.presence_key, [left]))
        return ACK_OK

    def _enqueue(self, action: Callable[[], None]) -> None:
        if not self._closed:
            self._queue.put_nowait(action)

    async def _pump(self) -> None:
        while True:
            action = await self._queue.get()
            try:
                if action is _STOP:
                    return
                action()
            finally:
                self._queue.task_done()

    async def _shutdown(self) -> None:
        if self._tracked is not None:
            await self.untrack_presence()
        self._bus._detach(self)
        self._enqueue(lambda: self._dispatch_status(ChannelStatus.CLOSED))
        self._queue.put_nowait(_STOP)
        self._closed = True
        # A handler closing its own channel cannot wait on the pump it runs in.
        if self._pump_task is not None and self._pump_task is not asyncio.current_task():
            await self._pump_task
            self._pump_task = None


class InMemoryRealtimeBus(RealtimeBus):
    """Process-local bus.

    Every subscribed channel has its own queue and pump task, so events reach
    each subscriber in publish order and a slow subscriber never holds up the
    others.
    """

    def __init__(self) -> None:
        self._topics: dict[str, list[InMemoryChannel]] = {}

    def open_channel(self, name: str, presence_key: str | None = None) -> InMemoryChannel:
        return InMemoryChannel(self, name, presence_key)

    async def close_channel(self, channel: Channel) -> str:
        if not isinstance(channel, InMemoryChannel):
            raise ChannelFailure(f"Channel {channel.topic} does not belong to this bus")
        await channel._shutdown()
        return ACK_OK

    async def publish_change(self, event: ChangeEvent) -> None:
        for channels in self._topics.values():
            for channel in list(channels):
                channel._enqueue(lambda c=channel: c._dispatch_change(event))

    async def close(self) -> None:
        for channels in list(self._topics.values()):
            for channel in list(channels):
                await channel._shutdown()
        self._topics.clear()

    def emit_status(
        self, topic: str, status: ChannelStatus, error: Exception | None = None
    ) -> None:
        """Report a transport-level status change to every subscriber of ``topic``."""
        for channel in list(self._topics.get(topic, [])):
            channel._enqueue(lambda c=channel: c._dispatch_status(status, error))

    def presence_state(self, topic: str) -> dict[str, list[dict[str, Any]]]:
        """Return the authoritative presence state of ``topic``."""
        state: dict[str, list[dict[str, Any]]] = {}
        for channel in self._topics.get(topic, []):
            if channel._tracked is not None:
                state.setdefault(channel.presence_key, []).append(dict(channel._tracked))
        return state

    def subscriber_count(self, topic: str) -> int:
        return len(self._topics.get(topic, []))

    async def drain(self) -> None:
        """Wait until every subscriber has handled everything queued so far."""
        while True:
            channels = [c for topic in self._topics.values() for c in topic]
            for channel in channels:
                await channel._queue.join()
            # Let tasks started by handlers run before checking again.
            for _ in range(3):
                await asyncio.sleep(0)
            current = [c for topic in self._topics.values() for c in topic]
            if all(c._queue.empty() for c in current):
                return

    def _attach(self, channel: InMemoryChannel) -> None:
        self._topics.setdefault(channel.topic, []).append(channel)
        state = self.presence_state(channel.topic)
        channel._enqueue(lambda: channel._dispatch_status(ChannelStatus.ACTIVE))
        channel._enqueue(lambda: channel._dispatch_sync(state))

    def _detach(self, channel: InMemoryChannel) -> None:
        channels = self._topics.get(channel.topic, [])
        if channel in channels:
            channels.remove(channel)
        if not channels:
            self._topics.pop(channel.topic, None)

    def _presence_changed(
        self,
        topic: str,
        joined: tuple[str, list[dict[str, Any]]] | None = None,
        left: tuple[str, list[dict[str, Any]]] | None = None,
    ) -> None:
        state = self.presence_state(topic)
        for channel in list(self._topics.get(topic, [])):
            if joined is not None:
                key, metas = joined
                channel._enqueue(lambda c=channel, k=key, m=metas: c._dispatch_join(k, m))
            if left is not None:
                key, metas = left
                channel._enqueue(lambda c=channel, k=key, m=metas: c._dispatch_leave(k, m))
            channel._enqueue(lambda c=channel: c._dispatch_sync(state))
