# tests/services/test_realtime_redis.py
import asyncio
import json
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from raffle_room.core.errors import ChannelFailure, TransientConnectivity
from raffle_room.core.settings import settings
from raffle_room.services.realtime import (
    ChangeEvent,
    ChangeFilter,
    ChangeType,
    ChannelStatus,
)
from raffle_room.services.realtime_redis import (
    CHANGES_CHANNEL,
    RedisRealtimeBus,
    presence_channel_name,
    presence_members_key,
    presence_payloads_key,
)
from raffle_room.services.record_store import RecordStore
from raffle_room.services.state_machine import RaffleRecord, RaffleState
from raffle_room.services.synchronizer import ClientSynchronizer

TOPIC = "raffle-room-1"


async def _idle_listen():
    await asyncio.Event().wait()
    yield {}


@pytest.fixture
def pubsub() -> MagicMock:
    pubsub = MagicMock()
    pubsub.subscribe = AsyncMock()
    pubsub.unsubscribe = AsyncMock()
    pubsub.aclose = AsyncMock()
    pubsub.listen = _idle_listen
    return pubsub


@pytest.fixture
def redis_client(pubsub: MagicMock) -> MagicMock:
    client = MagicMock()
    for name in (
        "hset",
        "hget",
        "hdel",
        "hmget",
        "zadd",
        "zrem",
        "zrange",
        "zrangebyscore",
        "publish",
        "aclose",
    ):
        setattr(client, name, AsyncMock())
    client.zrangebyscore.return_value = []
    client.zrange.return_value = []
    client.hmget.return_value = []
    client.hget.return_value = None
    client.pubsub.return_value = pubsub
    return client


@pytest.fixture
def redis_bus(redis_client: MagicMock) -> RedisRealtimeBus:
    return RedisRealtimeBus(client=redis_client)


def _event() -> ChangeEvent:
    return ChangeEvent(
        table="public_data",
        event_type=ChangeType.UPDATE,
        record_id=1,
        new={"id": 1, "state": "DRAWING", "winner": None},
        old={"id": 1},
    )


@pytest.mark.asyncio
async def test_publish_change_serialises_event(
    redis_bus: RedisRealtimeBus, redis_client: MagicMock
) -> None:
    await redis_bus.publish_change(_event())
    channel, payload = redis_client.publish.call_args[0]
    assert channel == CHANGES_CHANNEL
    assert ChangeEvent.from_dict(json.loads(payload)) == _event()


@pytest.mark.asyncio
async def test_publish_failure_is_transient(
    redis_bus: RedisRealtimeBus, redis_client: MagicMock
) -> None:
    redis_client.publish.side_effect = RedisConnectionError("refused")
    with pytest.raises(TransientConnectivity):
        await redis_bus.publish_change(_event())


@pytest.mark.asyncio
async def test_subscribe_activates_and_syncs(
    redis_bus: RedisRealtimeBus, pubsub: MagicMock
) -> None:
    channel = redis_bus.open_channel(TOPIC)
    statuses: list[ChannelStatus] = []
    syncs: list[Any] = []
    channel.on_status(lambda status, error: statuses.append(status))
    channel.on_presence_sync(syncs.append)

    assert await channel.subscribe() is ChannelStatus.ACTIVE
    pubsub.subscribe.assert_awaited_once_with(CHANGES_CHANNEL, presence_channel_name(TOPIC))
    assert statuses == [ChannelStatus.ACTIVE]
    assert syncs == [{}]

    await redis_bus.close_channel(channel)
    assert statuses[-1] is ChannelStatus.CLOSED
    pubsub.unsubscribe.assert_awaited_once()
    pubsub.aclose.assert_awaited_once()


@pytest.mark.asyncio
async def test_subscribe_failure_reports_error(
    redis_bus: RedisRealtimeBus, pubsub: MagicMock
) -> None:
    pubsub.subscribe.side_effect = RedisConnectionError("refused")
    channel = redis_bus.open_channel(TOPIC)
    statuses: list[ChannelStatus] = []
    channel.on_status(lambda status, error: statuses.append(status))

    assert await channel.subscribe() is ChannelStatus.ERROR
    assert statuses == [ChannelStatus.ERROR]
    with pytest.raises(ChannelFailure):
        await channel.track_presence({"user": "user_a"})
    await redis_bus.close_channel(channel)
    assert statuses[-1] is ChannelStatus.CLOSED


@pytest.mark.asyncio
async def test_track_and_untrack_presence(
    redis_bus: RedisRealtimeBus, redis_client: MagicMock
) -> None:
    channel = redis_bus.open_channel(TOPIC, presence_key="user_a")
    await channel.subscribe()

    await channel.track_presence({"user": "user_a", "online_at": "2024-01-01T00:00:00Z"})
    key, member, raw = redis_client.hset.call_args[0]
    assert key == presence_payloads_key(TOPIC)
    assert member.startswith("user_a|")
    assert json.loads(raw)["user"] == "user_a"
    assert member in redis_client.zadd.call_args[0][1]
    notice = json.loads(redis_client.publish.call_args[0][1])
    assert notice["event"] == "join"
    assert notice["key"] == "user_a"

    redis_client.hget.return_value = raw
    await channel.untrack_presence()
    redis_client.zrem.assert_awaited_with(presence_members_key(TOPIC), member)
    redis_client.hdel.assert_awaited_with(presence_payloads_key(TOPIC), member)
    notice = json.loads(redis_client.publish.call_args[0][1])
    assert notice["event"] == "leave"

    await redis_bus.close_channel(channel)


@pytest.mark.asyncio
async def test_track_failure_is_transient(
    redis_bus: RedisRealtimeBus, redis_client: MagicMock
) -> None:
    channel = redis_bus.open_channel(TOPIC, presence_key="user_a")
    await channel.subscribe()
    redis_client.hset.side_effect = RedisConnectionError("refused")
    with pytest.raises(TransientConnectivity):
        await channel.track_presence({"user": "user_a"})
    await redis_bus.close_channel(channel)


@pytest.mark.asyncio
async def test_refresh_presence_expires_stale_members_and_groups_by_key(
    redis_bus: RedisRealtimeBus, redis_client: MagicMock
) -> None:
    channel = redis_bus.open_channel(TOPIC)
    syncs: list[Any] = []
    channel.on_presence_sync(syncs.append)

    redis_client.zrangebyscore.return_value = ["gone|r0"]
    redis_client.zrange.return_value = ["user_a|r1", "user_a|r2", "user_b|r3", "user_c|r4"]
    redis_client.hmget.return_value = [
        json.dumps({"user": "user_a", "presence_ref": "r1"}),
        json.dumps({"user": "user_a", "presence_ref": "r2"}),
        json.dumps({"user": "user_b", "presence_ref": "r3"}),
        None,
    ]

    await channel.refresh_presence()

    redis_client.zrem.assert_awaited_once_with(presence_members_key(TOPIC), "gone|r0")
    redis_client.hdel.assert_awaited_once_with(presence_payloads_key(TOPIC), "gone|r0")
    state = syncs[-1]
    assert sorted(state) == ["user_a", "user_b"]
    assert len(state["user_a"]) == 2


@pytest.mark.asyncio
async def test_messages_are_dispatched_by_channel(redis_bus: RedisRealtimeBus) -> None:
    channel = redis_bus.open_channel(TOPIC)
    changes: list[ChangeEvent] = []
    joins: list[str] = []
    channel.on_change(ChangeFilter(table="public_data", record_id=1), changes.append)
    channel.on_presence_join(lambda key, presences: joins.append(key))

    await channel._handle_message(CHANGES_CHANNEL, json.dumps(_event().to_dict()))
    await channel._handle_message(CHANGES_CHANNEL, "not json")
    await channel._handle_message(CHANGES_CHANNEL, json.dumps({"table": "public_data"}))
    await channel._handle_message(
        presence_channel_name(TOPIC),
        json.dumps({"event": "join", "key": "user_z", "presences": [{"user": "user_z"}]}),
    )

    assert changes == [_event()]
    assert joins == ["user_z"]


@pytest.mark.asyncio
async def test_non_object_messages_are_ignored(redis_bus: RedisRealtimeBus) -> None:
    channel = redis_bus.open_channel(TOPIC)
    changes: list[ChangeEvent] = []
    channel.on_change(ChangeFilter(table="public_data"), changes.append)

    await channel._handle_message(presence_channel_name(TOPIC), "[1]")
    await channel._handle_message(CHANGES_CHANNEL, '"DRAWING"')
    await channel._handle_message(
        presence_channel_name(TOPIC),
        json.dumps({"event": "join", "key": "user_z", "presences": "oops"}),
    )

    assert changes == []


class PresenceKeys:
    """Dict-backed stand-in for the presence sorted set and payload hash of one topic."""

    def __init__(self) -> None:
        self.scores: dict[str, float] = {}
        self.payloads: dict[str, str] = {}

    async def hset(self, key: str, member: str, raw: str) -> None:
        self.payloads[member] = raw

    async def hget(self, key: str, member: str) -> str | None:
        return self.payloads.get(member)

    async def hdel(self, key: str, *members: str) -> None:
        for member in members:
            self.payloads.pop(member, None)

    async def hmget(self, key: str, members: list[str]) -> list[str | None]:
        return [self.payloads.get(member) for member in members]

    async def zadd(self, key: str, mapping: dict[str, float]) -> None:
        self.scores.update(mapping)

    async def zrem(self, key: str, *members: str) -> None:
        for member in members:
            self.scores.pop(member, None)

    async def zrange(self, key: str, start: int, end: int) -> list[str]:
        return sorted(self.scores, key=self.scores.__getitem__)

    async def zrangebyscore(self, key: str, low: Any, high: float) -> list[str]:
        return [member for member, score in self.scores.items() if score <= high]


@pytest.fixture
def presence_keys(redis_client: MagicMock) -> PresenceKeys:
    keys = PresenceKeys()
    for name in ("hset", "hget", "hdel", "hmget", "zadd", "zrem", "zrange", "zrangebyscore"):
        getattr(redis_client, name).side_effect = getattr(keys, name)
    return keys


@pytest.mark.asyncio
async def test_heartbeat_restores_presence_expired_during_a_gap(
    redis_bus: RedisRealtimeBus, presence_keys: PresenceKeys
) -> None:
    spectator = redis_bus.open_channel(TOPIC, presence_key="user_a")
    observer = redis_bus.open_channel(TOPIC)
    syncs: list[Any] = []
    observer.on_presence_sync(syncs.append)
    await spectator.subscribe()
    await observer.subscribe()
    await spectator.track_presence({"user": "user_a"})

    await observer.refresh_presence()
    assert list(syncs[-1]) == ["user_a"]

    # Heartbeats stalled for longer than the timeout.
    member = next(iter(presence_keys.scores))
    presence_keys.scores[member] -= settings.presence_timeout_seconds + 1
    await observer.refresh_presence()
    assert syncs[-1] == {}
    assert presence_keys.payloads == {}

    await spectator._heartbeat()
    await observer.refresh_presence()
    assert list(syncs[-1]) == ["user_a"]
    assert syncs[-1]["user_a"][0]["user"] == "user_a"

    await redis_bus.close_channel(spectator)
    await redis_bus.close_channel(observer)


@pytest.mark.asyncio
async def test_heartbeat_skipped_while_disconnected(
    redis_bus: RedisRealtimeBus, redis_client: MagicMock
) -> None:
    channel = redis_bus.open_channel(TOPIC, presence_key="user_a")
    await channel.subscribe()
    await channel.track_presence({"user": "user_a"})
    redis_client.zadd.reset_mock()

    channel._dispatch_status(ChannelStatus.ERROR, RedisConnectionError("down"))
    await channel._heartbeat()
    redis_client.zadd.assert_not_awaited()

    await redis_bus.close_channel(channel)


async def _eventually(predicate: Callable[[], bool]) -> None:
    for _ in range(500):
        if predicate():
            return
        await asyncio.sleep(0)
    assert predicate()


async def _broken_listen():
    raise RedisConnectionError("connection reset")
    yield {}


@pytest.fixture
def flaky_pubsubs(redis_client: MagicMock, pubsub: MagicMock, mocker: Any) -> MagicMock:
    """First pub/sub connection drops straight away; the next one stays up."""
    mocker.patch.object(settings, "redis_reconnect_delay_seconds", 0.0)
    broken = MagicMock()
    broken.subscribe = AsyncMock()
    broken.unsubscribe = AsyncMock()
    broken.aclose = AsyncMock()
    broken.listen = _broken_listen
    redis_client.pubsub.side_effect = [broken, pubsub]
    return broken


@pytest.mark.asyncio
async def test_lost_connection_is_reestablished(
    redis_bus: RedisRealtimeBus, flaky_pubsubs: MagicMock, pubsub: MagicMock
) -> None:
    channel = redis_bus.open_channel(TOPIC)
    statuses: list[ChannelStatus] = []
    channel.on_status(lambda status, error: statuses.append(status))

    await channel.subscribe()
    await _eventually(lambda: len(statuses) >= 3)

    assert statuses == [ChannelStatus.ACTIVE, ChannelStatus.ERROR, ChannelStatus.ACTIVE]
    flaky_pubsubs.aclose.assert_awaited_once()
    pubsub.subscribe.assert_awaited_once_with(CHANGES_CHANNEL, presence_channel_name(TOPIC))
    assert channel.subscribed
    await redis_bus.close_channel(channel)


@pytest.mark.asyncio
async def test_client_refetches_after_reconnect(
    redis_bus: RedisRealtimeBus, flaky_pubsubs: MagicMock
) -> None:
    now = datetime.now(timezone.utc)
    store = MagicMock(spec=RecordStore)
    store.fetch_one = AsyncMock(
        side_effect=[
            RaffleRecord(id=1, created_at=now, state=RaffleState.WAITING),
            RaffleRecord(id=1, created_at=now, state=RaffleState.DRAWING),
        ]
    )
    client = ClientSynchronizer(
        store, redis_bus, record_id=1, channel_name=TOPIC, participant_id="user_a"
    )
    seen: list[RaffleState] = []
    client.add_listener(lambda view: seen.append(view.state))

    await client.attach()
    await _eventually(lambda: store.fetch_one.await_count == 2 and not client._tasks)

    assert RaffleState.ERROR in seen
    assert client.view.state is RaffleState.DRAWING
    assert client.view.error is None
    await client.detach()


@pytest.mark.asyncio
async def test_bus_close_releases_client(
    redis_bus: RedisRealtimeBus, redis_client: MagicMock
) -> None:
    await redis_bus.close()
    redis_client.aclose.assert_awaited_once()
