"""Redis-backed realtime bus.

Change events and presence notices travel over Redis pub/sub. Presence itself
lives in two keys per topic: a sorted set of members scored by their last
heartbeat and a hash holding each member's tracked payload. Members whose
heartbeat is older than ``presence_timeout_seconds`` are dropped the next
time anyone rebuilds the snapshot, which every subscriber does on each
presence notice and on a fixed interval.
"""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
import time
from collections.abc import Mapping
from typing import Any

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from raffle_room.core.errors import ChannelFailure, TransientConnectivity
from raffle_room.core.settings import settings
from raffle_room.services.realtime import (
    ACK_OK,
    ChangeEvent,
    Channel,
    ChannelStatus,
    RealtimeBus,
)

# Configure logger for this module
logger = logging.getLogger(__name__)

KEY_PREFIX = "raffle"
CHANGES_CHANNEL = f"{KEY_PREFIX}:changes"
_MEMBER_SEPARATOR = "|"


def presence_channel_name(topic: str) -> str:
    return f"{KEY_PREFIX}:presence:{topic}"


def presence_members_key(topic: str) -> str:
    return f"{KEY_PREFIX}:presence:{topic}:members"


def presence_payloads_key(topic: str) -> str:
    return f"{KEY_PREFIX}:presence:{topic}:payloads"


class RedisChannel(Channel):
    """Channel attached to a topic through a Redis pub/sub connection.

    A lost connection is reported as ``ERROR`` and retried with exponential
    backoff; every successful (re)subscribe reports ``ACTIVE`` again.
    """

    def __init__(
        self,
        bus: RedisRealtimeBus,
        topic: str,
        presence_key: str | None,
    ) -> None:
        super().__init__(topic, presence_key)
        self._bus = bus
        self._pubsub: Any = None
        self._reader_task: asyncio.Task[None] | None = None
        self._sync_task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._member: str | None = None
        self._meta: str | None = None

    @property
    def _redis(self) -> Any:
        return self._bus.client

    async def subscribe(self) -> ChannelStatus:
        if self._reader_task is not None:
            return self.status or ChannelStatus.ERROR
        connected = await self._connect()
        self._reader_task = asyncio.create_task(self._read_loop(connected))
        self._sync_task = asyncio.create_task(self._sync_loop())
        if not connected:
            return ChannelStatus.ERROR
        await self.refresh_presence()
        return ChannelStatus.ACTIVE

    async def track_presence(self, payload: Mapping[str, Any]) -> str:
        if not self.subscribed:
            raise ChannelFailure(
                f"Cannot track presence on {self.topic} before the channel is subscribed"
            )
        ref = secrets.token_hex(8)
        member = f"{self.presence_key}{_MEMBER_SEPARATOR}{ref}"
        meta = {**payload, "presence_ref": ref}
        raw = json.dumps(meta)
        try:
            await self._write_presence(member, raw)
            await self._publish_notice("join", [meta])
        except (RedisError, OSError) as exc:
            raise TransientConnectivity(f"Tracking presence on {self.topic} failed: {exc}") from exc
        self._member = member
        self._meta = raw
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        return ACK_OK

    async def untrack_presence(self) -> str:
        member = self._member
        if member is None:
            return ACK_OK
        self._member = None
        self._meta = None
        await self._cancel(self._heartbeat_task)
        self._heartbeat_task = None
        try:
            raw = await self._redis.hget(presence_payloads_key(self.topic), member)
            await self._redis.zrem(presence_members_key(self.topic), member)
            await self._redis.hdel(presence_payloads_key(self.topic), member)
            left = [json.loads(raw)] if raw else []
            await self._publish_notice("leave", left)
        except (RedisError, OSError) as exc:
            raise TransientConnectivity(
                f"Untracking presence on {self.topic} failed: {exc}"
            ) from exc
        return ACK_OK

    async def refresh_presence(self) -> None:
        """Rebuild the presence snapshot from Redis and send it to sync handlers."""
        members_key = presence_members_key(self.topic)
        payloads_key = presence_payloads_key(self.topic)
        cutoff = time.time() - settings.presence_timeout_seconds
        try:
            expired = await self._redis.zrangebyscore(members_key, "-inf", cutoff)
            if expired:
                await self._redis.zrem(members_key, *expired)
                await self._redis.hdel(payloads_key, *expired)
                logger.info("Expired %d stale presence(s) on %s", len(expired), self.topic)
            members = await self._redis.zrange(members_key, 0, -1)
            payloads = await self._redis.hmget(payloads_key, members) if members else []
        except (RedisError, OSError) as exc:
            logger.warning("Presence refresh on %s failed: %s", self.topic, exc)
            return

        state: dict[str, list[dict[str, Any]]] = {}
        for member, raw in zip(members, payloads):
            if raw is None:
                continue
            key = member.split(_MEMBER_SEPARATOR, 1)[0]
            try:
                state.setdefault(key, []).append(json.loads(raw))
            except ValueError:
                logger.warning("Skipping undecodable presence payload for %s", member)
        self._dispatch_sync(state)

    async def close(self) -> None:
        if self._member is not None:
            try:
                await self.untrack_presence()
            except TransientConnectivity as exc:
                logger.warning("Untracking during close of %s failed: %s", self.topic, exc)
        for task in (self._sync_task, self._reader_task):
            await self._cancel(task)
        self._sync_task = None
        self._reader_task = None
        await self._close_pubsub()
        self._dispatch_status(ChannelStatus.CLOSED)

    async def _connect(self) -> bool:
        """Open a fresh pub/sub connection; report ACTIVE on success, ERROR on failure."""
        try:
            pubsub = self._redis.pubsub()
            await pubsub.subscribe(CHANGES_CHANNEL, presence_channel_name(self.topic))
        except (RedisError, OSError) as exc:
            logger.warning("Subscribing to %s failed: %s", self.topic, exc)
            if self.status is not ChannelStatus.ERROR:
                self._dispatch_status(ChannelStatus.ERROR, exc)
            return False
        self._pubsub = pubsub
        self._dispatch_status(ChannelStatus.ACTIVE)
        return True

    async def _reconnect(self) -> None:
        await self._close_pubsub()
        delay = settings.redis_reconnect_delay_seconds
        while True:
            await asyncio.sleep(delay)
            if await self._connect():
                logger.info("Realtime connection for %s re-established", self.topic)
                await self._heartbeat()
                await self.refresh_presence()
                return
            delay = min(
                max(delay * 2, settings.redis_reconnect_delay_seconds),
                settings.redis_reconnect_max_delay_seconds,
            )

    async def _close_pubsub(self) -> None:
        pubsub, self._pubsub = self._pubsub, None
        if pubsub is None:
            return
        try:
            await pubsub.unsubscribe()
            await pubsub.aclose()
        except (RedisError, OSError) as exc:
            logger.warning("Closing pub/sub for %s failed: %s", self.topic, exc)

    async def _write_presence(self, member: str, raw: str) -> None:
        # Payload and score are written together so an expired member comes
        # back whole on its next heartbeat.
        await self._redis.hset(presence_payloads_key(self.topic), member, raw)
        await self._redis.zadd(presence_members_key(self.topic), {member: time.time()})

    async def _publish_notice(self, event: str, presences: list[dict[str, Any]]) -> None:
        notice = {"event": event, "key": self.presence_key, "presences": presences}
        await self._redis.publish(presence_channel_name(self.topic), json.dumps(notice))

    async def _read_loop(self, connected: bool) -> None:
        while True:
            if not connected:
                await self._reconnect()
            connected = False
            error: Exception
            try:
                async for message in self._pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    await self._handle_message(message["channel"], message["data"])
            except asyncio.CancelledError:
                raise
            except (RedisError, OSError) as exc:
                error = exc
            else:
                error = ChannelFailure(f"Subscription stream for {self.topic} ended")
            logger.warning("Realtime connection for %s lost: %s", self.topic, error)
            self._dispatch_status(ChannelStatus.ERROR, error)

    async def _handle_message(self, channel: str, data: str) -> None:
        try:
            payload = json.loads(data)
        except ValueError:
            logger.warning("Ignoring undecodable message on %s", channel)
            return
        if not isinstance(payload, dict):
            logger.warning("Ignoring non-object message on %s: %r", channel, payload)
            return

        if channel == CHANGES_CHANNEL:
            try:
                event = ChangeEvent.from_dict(payload)
            except (KeyError, TypeError, ValueError):
                logger.warning("Ignoring malformed change event: %r", payload)
                return
            self._dispatch_change(event)
            return

        key = str(payload.get("key", ""))
        presences = payload.get("presences")
        presences = list(presences) if isinstance(presences, list) else []
        if payload.get("event") == "join":
            self._dispatch_join(key, presences)
        elif payload.get("event") == "leave":
            self._dispatch_leave(key, presences)
        await self.refresh_presence()

    async def _sync_loop(self) -> None:
        interval = max(0.1, float(settings.presence_sync_interval_seconds))
        while True:
            await asyncio.sleep(interval)
            if self.subscribed:
                await self.refresh_presence()

    async def _heartbeat_loop(self) -> None:
        interval = max(0.1, float(settings.presence_timeout_seconds) / 3)
        while True:
            await asyncio.sleep(interval)
            await self._heartbeat()

    async def _heartbeat(self) -> None:
        """Renew this session's presence while the channel is connected."""
        member, raw = self._member, self._meta
        if member is None or raw is None or not self.subscribed:
            return
        try:
            await self._write_presence(member, raw)
        except (RedisError, OSError) as exc:
            logger.warning("Presence heartbeat on %s failed: %s", self.topic, exc)

    @staticmethod
    async def _cancel(task: asyncio.Task[None] | None) -> None:
        # Only the channel's own background loops are cancelled here.
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


class RedisRealtimeBus(RealtimeBus):
    """Bus that shares events and presence between processes through Redis."""

    def __init__(self, client: Any = None, redis_url: str | None = None) -> None:
        self.client = client or aioredis.from_url(
            redis_url or settings.redis_url,
            decode_responses=True,
        )

    def open_channel(self, name: str, presence_key: str | None = None) -> RedisChannel:
        return RedisChannel(self, name, presence_key)

    async def close_channel(self, channel: Channel) -> str:
        if not isinstance(channel, RedisChannel):
            raise ChannelFailure(f"Channel {channel.topic} does not belong to this bus")
        await channel.close()
        return ACK_OK

    async def publish_change(self, event: ChangeEvent) -> None:
        try:
            await self.client.publish(CHANGES_CHANNEL, json.dumps(event.to_dict()))
        except (RedisError, OSError) as exc:
            raise TransientConnectivity(f"Publishing change event failed: {exc}") from exc

    async def close(self) -> None:
        await self.client.aclose()
