import asyncio
import logging
from typing import Awaitable, Callable, Optional

import redis.asyncio as redis

from chatcore.core.config import get_settings


logger = logging.getLogger(__name__)

MessageHandler = Callable[[str], Awaitable[None]]


class NoopSubscription:

    async def run(self) -> None:
        await asyncio.Future()

    async def cancel(self) -> None:
        return


class NoopBus:
    """Single-process mode: nothing crosses process boundaries."""

    enabled = False

    async def publish(self, channel: str, message: str) -> None:
        return

    async def subscribe(self, channel: str, on_message: MessageHandler) -> NoopSubscription:
        return NoopSubscription()

    async def set_presence(self, user_id: str, ttl_seconds: int = 60) -> None:
        return

    async def clear_presence(self, user_id: str) -> None:
        return

    async def is_present(self, user_id: str) -> bool:
        return False

    async def add_connection(self, user_id: str, connection_id: str, ttl_seconds: int = 60) -> int:
        return 0

    async def remove_connection(self, user_id: str, connection_id: str) -> int:
        return 0

    async def connection_count(self, user_id: str) -> int:
        return 0

    async def close(self) -> None:
        return


class RedisSubscription:

    def __init__(self, pubsub, channel: str, on_message: MessageHandler) -> None:
        self._pubsub = pubsub
        self._channel = channel
        self._on_message = on_message
        self._running = True

    async def run(self) -> None:
        while self._running:
            try:
                msg = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if msg and msg.get("type") == "message":
                    data = msg.get("data")
                    if isinstance(data, bytes):
                        data = data.decode("utf-8")
                    await self._on_message(data)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Realtime bus subscriber error on %s", self._channel)
                await asyncio.sleep(0.5)

    async def cancel(self) -> None:
        self._running = False
        try:
            await self._pubsub.unsubscribe(self._channel)
            await self._pubsub.aclose()
        except redis.RedisError as exc:
            logger.warning("Failed to unsubscribe from %s: %s", self._channel, exc)


class RedisBus:

    enabled = True

    def __init__(self, url: str) -> None:
        self._redis = redis.from_url(url)

    async def publish(self, channel: str, message: str) -> None:
        await self._redis.publish(channel, message)

    async def subscribe(self, channel: str, on_message: MessageHandler) -> RedisSubscription:
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)
        return RedisSubscription(pubsub, channel, on_message)

    async def set_presence(self, user_id: str, ttl_seconds: int = 60) -> None:
        await self._redis.set(f"presence:{user_id}", "online", ex=ttl_seconds)

    async def clear_presence(self, user_id: str) -> None:
        await self._redis.delete(f"presence:{user_id}")

    async def is_present(self, user_id: str) -> bool:
        ttl = await self._redis.ttl(f"presence:{user_id}")
        return bool(ttl and ttl > 0)

    # live connection ids of a user across every process

    async def add_connection(self, user_id: str, connection_id: str, ttl_seconds: int = 60) -> int:
        key = f"presence:{user_id}:connections"
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.sadd(key, connection_id)
            pipe.expire(key, ttl_seconds)
            pipe.scard(key)
            _, _, count = await pipe.execute()
        return int(count)

    async def remove_connection(self, user_id: str, connection_id: str) -> int:
        key = f"presence:{user_id}:connections"
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.srem(key, connection_id)
            pipe.scard(key)
            _, count = await pipe.execute()
        return int(count)

    async def connection_count(self, user_id: str) -> int:
        return int(await self._redis.scard(f"presence:{user_id}:connections"))

    async def close(self) -> None:
        await self._redis.aclose()


_bus = None


async def get_bus(url: Optional[str] = None):
    global _bus
    if _bus is not None:
        return _bus
    url = url or get_settings().redis_url
    if not url:
        _bus = NoopBus()
    else:
        _bus = RedisBus(url)
        logger.info("Realtime bus backed by Redis")
    return _bus


async def close_bus() -> None:
    global _bus
    if _bus is not None:
        await _bus.close()
    _bus = None
