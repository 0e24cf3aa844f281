"""
Tests for the broadcast bus.

Tests cover:
- In-memory fan-out to local subscribers, in publish order
- Duplicate event ids are delivered once
- Handler failures do not stop delivery or reach the publisher
- Redis backend publishes JSON and dispatches what its listener receives
"""

import asyncio
import json

import pytest

from relay.bus import (
    BusEvent,
    InMemoryBroadcastBus,
    RedisBroadcastBus,
    create_bus,
)


class Recorder:
    def __init__(self):
        self.events = []

    async def __call__(self, bus_event):
        self.events.append(bus_event)


@pytest.mark.asyncio
async def test_memory_bus_delivers_in_order():
    bus = InMemoryBroadcastBus()
    recorder = Recorder()
    bus.subscribe(recorder)

    await bus.publish("chat message", {"alias": "a"}, 1)
    await bus.publish("user count", 3)

    assert [(e.event, e.args) for e in recorder.events] == [
        ("chat message", [{"alias": "a"}, 1]),
        ("user count", [3]),
    ]


@pytest.mark.asyncio
async def test_memory_bus_reaches_every_subscriber():
    bus = InMemoryBroadcastBus()
    first, second = Recorder(), Recorder()
    bus.subscribe(first)
    bus.subscribe(second)

    await bus.publish("server message", "hello")

    assert len(first.events) == 1
    assert len(second.events) == 1
    assert first.events[0].eid == second.events[0].eid


@pytest.mark.asyncio
async def test_repeated_event_id_is_dropped():
    bus = InMemoryBroadcastBus()
    recorder = Recorder()
    bus.subscribe(recorder)

    event = BusEvent(event="user count", args=[1])
    await bus._dispatch(event)
    await bus._dispatch(event)

    assert len(recorder.events) == 1


@pytest.mark.asyncio
async def test_failing_handler_is_isolated():
    bus = InMemoryBroadcastBus()
    recorder = Recorder()

    async def broken(bus_event):
        raise RuntimeError("boom")

    bus.subscribe(broken)
    bus.subscribe(recorder)

    await bus.publish("user count", 2)

    assert len(recorder.events) == 1


def test_create_bus_schemes():
    assert isinstance(create_bus("memory://", "c"), InMemoryBroadcastBus)
    assert isinstance(create_bus("redis://localhost:6379/0", "c"), RedisBroadcastBus)
    with pytest.raises(ValueError):
        create_bus("kafka://broker", "c")


class FakePubSub:
    def __init__(self):
        self.queue = asyncio.Queue()
        self.subscribed = []
        self.closed = False

    async def subscribe(self, channel):
        self.subscribed.append(channel)

    async def unsubscribe(self, channel):
        self.subscribed.remove(channel)

    async def get_message(self, ignore_subscribe_messages=True, timeout=1.0):
        try:
            return await asyncio.wait_for(self.queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    async def aclose(self):
        self.closed = True


class FakeRedis:
    """Loops published messages back into its own pubsub, like a one-node broker."""

    def __init__(self):
        self._pubsub = FakePubSub()
        self.published = []
        self.closed = False

    def pubsub(self):
        return self._pubsub

    async def publish(self, channel, data):
        self.published.append((channel, data))
        await self._pubsub.queue.put({"type": "message", "channel": channel, "data": data.encode()})
        return 1

    async def ping(self):
        return True

    async def aclose(self):
        self.closed = True


async def wait_for_events(recorder, count):
    for _ in range(100):
        if len(recorder.events) >= count:
            return
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_redis_bus_round_trip_through_channel():
    redis = FakeRedis()
    bus = RedisBroadcastBus("redis://unused", "relay:test", redis=redis)
    recorder = Recorder()
    bus.subscribe(recorder)
    await bus.start()

    await bus.publish("chat message", {"alias": "a", "content": "b", "color": "#000000"}, 7)
    await wait_for_events(recorder, 1)

    channel, data = redis.published[0]
    assert channel == "relay:test"
    assert json.loads(data)["event"] == "chat message"
    assert recorder.events[0].args == [{"alias": "a", "content": "b", "color": "#000000"}, 7]

    assert await bus.ping() is True
    await bus.close()
    assert redis.closed is True
    assert redis.pubsub().closed is True


@pytest.mark.asyncio
async def test_redis_bus_skips_malformed_messages():
    redis = FakeRedis()
    bus = RedisBroadcastBus("redis://unused", "relay:test", redis=redis)
    recorder = Recorder()
    bus.subscribe(recorder)
    await bus.start()

    await redis.pubsub().queue.put({"type": "message", "data": b"not json"})
    await bus.publish("user count", 1)
    await wait_for_events(recorder, 1)

    assert [e.event for e in recorder.events] == ["user count"]
    await bus.close()


@pytest.mark.asyncio
async def test_redis_bus_survives_undecodable_bytes():
    redis = FakeRedis()
    bus = RedisBroadcastBus("redis://unused", "relay:test", redis=redis)
    recorder = Recorder()
    bus.subscribe(recorder)
    await bus.start()

    await redis.pubsub().queue.put({"type": "message", "data": b"\xff\xfe"})
    await bus.publish("user count", 2)
    await wait_for_events(recorder, 1)

    assert not bus._listener.done()
    assert [e.args for e in recorder.events] == [[2]]
    await bus.close()


@pytest.mark.asyncio
async def test_publish_failure_is_not_raised():
    class DownRedis(FakeRedis):
        async def publish(self, channel, data):
            raise ConnectionError("redis down")

    bus = RedisBroadcastBus("redis://unused", "relay:test", redis=DownRedis())
    await bus.start()

    await bus.publish("user count", 1)

    await bus.close()
