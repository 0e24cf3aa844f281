"""
Broadcast bus: fan-out of one published event to every worker process.

Each worker subscribes a single local handler (the connection registry)
and publishes through the bus instead of writing to sockets directly, so a
message stored by one worker reaches clients connected to any worker.

Backends:
    - InMemoryBroadcastBus: single process only. Used for local dev and tests.
    - RedisBroadcastBus: Redis pub/sub, one listener task per worker.

Delivery guarantees:
    - Events published by one worker are delivered in publish order.
    - No ordering across workers; message order is fixed by log ids.
    - Every event carries an id; a worker drops an id it already delivered.
    - Publishing is fire-and-forget: the publisher never learns whether a
      particular client received the event.
"""
import asyncio
import logging
import uuid
from collections import OrderedDict
from typing import Any, Awaitable, Callable, List, Optional

from pydantic import BaseModel, Field, ValidationError
from redis.asyncio import Redis, from_url

from relay.metrics import record_broadcast

logger = logging.getLogger(__name__)

# Number of recently delivered event ids remembered per worker
EVENT_DEDUP_CACHE_SIZE = 10000


class BusEvent(BaseModel):
    """One broadcast as it travels between workers."""
    eid: str = Field(default_factory=lambda: uuid.uuid4().hex)
    event: str
    args: List[Any] = Field(default_factory=list)


Handler = Callable[[BusEvent], Awaitable[None]]


class BroadcastBus:
    """Base class holding local subscribers and the delivery dedup cache."""

    def __init__(self) -> None:
        self._handlers: List[Handler] = []
        self._seen_event_ids: "OrderedDict[str, None]" = OrderedDict()

    def subscribe(self, handler: Handler) -> None:
        self._handlers.append(handler)

    async def publish(self, event: str, *args: Any) -> None:
        """Broadcast `event` with positional `args` to all clients on all workers."""
        bus_event = BusEvent(event=event, args=list(args))
        record_broadcast(event)
        try:
            await self._send(bus_event)
        except Exception as e:
            # The log stays authoritative; clients catch up via recovery
            logger.error(f"Failed to publish {event!r} (eid={bus_event.eid}): {e}")

    async def _send(self, bus_event: BusEvent) -> None:
        raise NotImplementedError

    def _mark_seen(self, eid: str) -> bool:
        """Record an event id. Returns False if it was delivered before."""
        if eid in self._seen_event_ids:
            self._seen_event_ids.move_to_end(eid)
            return False
        self._seen_event_ids[eid] = None
        if len(self._seen_event_ids) > EVENT_DEDUP_CACHE_SIZE:
            self._seen_event_ids.popitem(last=False)
        return True

    async def _dispatch(self, bus_event: BusEvent) -> None:
        if not self._mark_seen(bus_event.eid):
            logger.debug(f"Dropping duplicate bus event eid={bus_event.eid}")
            return
        for handler in list(self._handlers):
            try:
                await handler(bus_event)
            except Exception:
                logger.exception(f"Bus handler failed for {bus_event.event!r}")

    async def start(self) -> None:
        pass

    async def close(self) -> None:
        self._handlers.clear()

    async def ping(self) -> bool:
        return True


class InMemoryBroadcastBus(BroadcastBus):
    """Delivers straight to the local handlers, sequentially."""

    async def _send(self, bus_event: BusEvent) -> None:
        await self._dispatch(bus_event)


class RedisBroadcastBus(BroadcastBus):
    """Redis pub/sub backend shared by all workers."""

    def __init__(self, url: str, channel: str, redis: Optional[Redis] = None) -> None:
        super().__init__()
        self._url = url
        self._channel = channel
        self._redis = redis
        self._pubsub = None
        self._listener: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._redis is None:
            self._redis = from_url(self._url, decode_responses=False)
        self._pubsub = self._redis.pubsub()
        await self._pubsub.subscribe(self._channel)
        self._listener = asyncio.create_task(self._listen())
        logger.info(f"Redis broadcast bus listening on {self._channel}")

    async def _send(self, bus_event: BusEvent) -> None:
        await self._redis.publish(self._channel, bus_event.model_dump_json())

    def _decode(self, data) -> Optional[BusEvent]:
        try:
            if isinstance(data, (bytes, bytearray)):
                data = data.decode("utf-8")
            return BusEvent.model_validate_json(data)
        except (UnicodeDecodeError, ValidationError) as e:
            logger.warning(f"Ignoring malformed bus message: {e}")
            return None

    async def _listen(self) -> None:
        while True:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=1.0
                )
            except Exception as e:
                logger.error(f"Redis bus receive failed: {e}")
                await asyncio.sleep(1.0)
                continue
            if not message or message.get("type") != "message":
                continue
            try:
                bus_event = self._decode(message.get("data"))
                if bus_event is not None:
                    await self._dispatch(bus_event)
            except Exception:
                logger.exception("Redis bus delivery failed")

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except Exception as e:
            logger.error(f"Redis bus ping failed: {e}")
            return False

    async def close(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self._pubsub is not None:
            await self._pubsub.unsubscribe(self._channel)
            await self._pubsub.aclose()
            self._pubsub = None
        if self._redis is not None:
            await self._redis.aclose()
            logger.info("Redis connection closed")
        await super().close()


def create_bus(url: str, channel: str) -> BroadcastBus:
    """Build the bus backend named by a BROADCAST_URL."""
    if url.startswith("memory://"):
        return InMemoryBroadcastBus()
    if url.startswith(("redis://", "rediss://", "unix://")):
        return RedisBroadcastBus(url, channel)
    raise ValueError(f"Unsupported BROADCAST_URL scheme: {url}")
