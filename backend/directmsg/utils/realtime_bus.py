import asyncio
import logging
from typing import Awaitable, Callable, Dict, List

import redis.asyncio as redis

from directmsg import config


logger = logging.getLogger(__name__)

OnMessage = Callable[[str], Awaitable[None]]


def conversation_channel(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


def user_channel(user_id: str) -> str:
    return f"user:{user_id}"


class LocalSubscription:
    """Queue drained by run(); publishers never wait on the subscriber."""

    def __init__(self, bus: "LocalBus", channel: str, on_message: OnMessage) -> None:
        self._bus = bus
        self.channel = channel
        self._on_message = on_message
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue = asyncio.Queue()
        self._running = True

    def offer(self, message: str) -> None:
        if not self._running or self._loop.is_closed():
            return
        # publishers may live on another thread's loop
        self._loop.call_soon_threadsafe(self._queue.put_nowait, message)

    async def run(self) -> None:
        while self._running:
            message = await self._queue.get()
            if message is None or not self._running:
                break
            try:
                await self._on_message(message)
            except Exception:
                logger.exception("Subscriber on %s failed to handle message", self.channel)

    async def cancel(self) -> None:
        if not self._running:
            return
        self._running = False
        self._bus._remove(self)
        self._loop.call_soon_threadsafe(self._queue.put_nowait, None)


class LocalBus:
    """In-process fan-out used when no REDIS_URL is configured."""

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[LocalSubscription]] = {}

    async def publish(self, channel: str, message: str) -> None:
        for sub in list(self._subscriptions.get(channel, [])):
            sub.offer(message)

    async def subscribe(self, channel: str, on_message: OnMessage) -> LocalSubscription:
        sub = LocalSubscription(self, channel, on_message)
        self._subscriptions.setdefault(channel, []).append(sub)
        return sub

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscriptions.get(channel, []))

    async def close(self) -> None:
        for subs in list(self._subscriptions.values()):
            for sub in list(subs):
                await sub.cancel()

    def _remove(self, sub: LocalSubscription) -> None:
        subs = self._subscriptions.get(sub.channel)
        if not subs:
            return
        try:
            subs.remove(sub)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(sub.channel, None)


class RedisSubscription:

    def __init__(self, pubsub, channel: str, on_message: OnMessage) -> None:
        self._pubsub = pubsub
        self.channel = channel
        self._on_message = on_message
        self._running = True

    async def run(self) -> None:
        while self._running:
            try:
                msg = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except redis.RedisError as exc:
                logger.warning("Redis subscription on %s interrupted: %s", self.channel, exc)
                await asyncio.sleep(0.5)
                continue
            if not msg or msg.get("type") != "message" or not self._running:
                continue
            data = msg.get("data")
            if isinstance(data, bytes):
                data = data.decode("utf-8")
            try:
                await self._on_message(data)
            except Exception:
                logger.exception("Subscriber on %s failed to handle message", self.channel)

    async def cancel(self) -> None:
        if not self._running:
            return
        self._running = False
        try:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.aclose()
        except redis.RedisError as exc:
            logger.warning("Redis unsubscribe from %s failed: %s", self.channel, exc)


class RedisBus:

    def __init__(self, url: str) -> None:
        self._redis = redis.from_url(url)

    async def publish(self, channel: str, message: str) -> None:
        await self._redis.publish(channel, message)

    async def subscribe(self, channel: str, on_message: OnMessage) -> RedisSubscription:
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)
        return RedisSubscription(pubsub, channel, on_message)

    async def close(self) -> None:
        await self._redis.aclose()


_bus = None


async def get_bus():
    global _bus
    if _bus is not None:
        return _bus
    if config.REDIS_URL:
        _bus = RedisBus(config.REDIS_URL)
    else:
        _bus = LocalBus()
    return _bus


async def close_bus() -> None:
    global _bus
    bus = _bus
    _bus = None
    if bus is not None:
        await bus.close()
