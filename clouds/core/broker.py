"""
Broker connections for clouds.

A node talks to the broker over two connections: a receive connection that
is put into subscribe mode, and a command connection for publish and the
key-value commands. A connection in subscribe mode cannot issue ordinary
commands, so the two are never shared.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TypeAlias
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import dataclass
from enum import Enum

import redis.asyncio as aioredis
from loguru import logger
from redis.exceptions import RedisError

from clouds.core.model import BrokerError
from clouds.core.types import BrokerKey, ChannelName, DurationSeconds, KeyPattern


class BrokerEventKind(Enum):
    SUBSCRIBED = "subscribe"
    MESSAGE = "message"


@dataclass(frozen=True, slots=True)
class BrokerEvent:
    """Something that happened on a subscribed receive connection."""

    kind: BrokerEventKind
    channel: ChannelName
    data: bytes | int | None = None


class Broker(ABC):
    """Command connection: publish plus the key-value commands."""

    @abstractmethod
    async def publish(self, channel: ChannelName, payload: bytes) -> int: ...

    @abstractmethod
    async def get(self, key: BrokerKey) -> bytes | None: ...

    @abstractmethod
    async def setex(
        self, key: BrokerKey, ttl: DurationSeconds, value: bytes | str | int
    ) -> None: ...

    @abstractmethod
    async def keys(self, pattern: KeyPattern) -> list[BrokerKey]: ...

    @abstractmethod
    async def delete(self, keys: Sequence[BrokerKey]) -> int: ...

    @abstractmethod
    async def close(self) -> None: ...


class Subscription(ABC):
    """Receive connection: one or more subscribed channels."""

    @abstractmethod
    async def subscribe(self, channel: ChannelName) -> None: ...

    @abstractmethod
    def events(self) -> AsyncIterator[BrokerEvent]: ...

    @abstractmethod
    async def close(self) -> None: ...


@dataclass(slots=True)
class BrokerConnections:
    """The connection pair owned by one node."""

    commands: Broker
    subscription: Subscription

    async def close(self) -> None:
        await self.commands.close()
        await self.subscription.close()


ConnectionFactory: TypeAlias = Callable[[], Awaitable[BrokerConnections]]


def _text(value: bytes | str) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value


class RedisBroker(Broker):
    """Command connection backed by ``redis.asyncio``."""

    def __init__(self, client: aioredis.Redis) -> None:
        self.client = client

    async def publish(self, channel: ChannelName, payload: bytes) -> int:
        try:
            return await self.client.publish(channel, payload)
        except RedisError as e:
            raise BrokerError(f"PUBLISH {channel} failed: {e}") from e

    async def get(self, key: BrokerKey) -> bytes | None:
        try:
            return await self.client.get(key)
        except RedisError as e:
            raise BrokerError(f"GET {key} failed: {e}") from e

    async def setex(
        self, key: BrokerKey, ttl: DurationSeconds, value: bytes | str | int
    ) -> None:
        # PSETEX is SETEX with millisecond precision, so fractional
        # heartbeat intervals keep their exact 2x lifetime.
        try:
            await self.client.psetex(key, max(1, int(ttl * 1000)), value)
        except RedisError as e:
            raise BrokerError(f"SETEX {key} failed: {e}") from e

    async def keys(self, pattern: KeyPattern) -> list[BrokerKey]:
        try:
            found = await self.client.keys(pattern)
        except RedisError as e:
            raise BrokerError(f"KEYS {pattern} failed: {e}") from e
        return [_text(key) for key in found]

    async def delete(self, keys: Sequence[BrokerKey]) -> int:
        if not keys:
            return 0
        try:
            return await self.client.delete(*keys)
        except RedisError as e:
            raise BrokerError(f"DEL failed: {e}") from e

    async def close(self) -> None:
        await self.client.aclose()


class RedisSubscription(Subscription):
    """Receive connection backed by a ``redis.asyncio`` pub/sub object."""

    def __init__(self, client: aioredis.Redis) -> None:
        self.client = client
        self.pubsub = client.pubsub()

    async def subscribe(self, channel: ChannelName) -> None:
        try:
            await self.pubsub.subscribe(channel)
        except RedisError as e:
            raise BrokerError(f"SUBSCRIBE {channel} failed: {e}") from e

    async def events(self) -> AsyncIterator[BrokerEvent]:
        async for msg in self.pubsub.listen():
            kind = msg.get("type")
            channel = _text(msg.get("channel", b""))
            if kind == "subscribe":
                yield BrokerEvent(BrokerEventKind.SUBSCRIBED, channel, msg.get("data"))
            elif kind == "message":
                data = msg.get("data")
                if isinstance(data, memoryview):
                    data = data.tobytes()
                if isinstance(data, str):
                    data = data.encode()
                yield BrokerEvent(BrokerEventKind.MESSAGE, channel, data)
            else:
                logger.debug("Ignoring pub/sub event of type {}", kind)

    async def close(self) -> None:
        await self.pubsub.aclose()
        await self.client.aclose()


async def open_redis_connections(url: str) -> BrokerConnections:
    """Create and verify the receive and command connections to ``url``."""
    receive = aioredis.from_url(url)
    command = aioredis.from_url(url)
    try:
        await receive.ping()
        await command.ping()
    except (RedisError, OSError) as e:
        await receive.aclose()
        await command.aclose()
        raise BrokerError(f"Failed to connect to broker at {url}: {e}") from e
    logger.info("Connected to broker at {}", url)
    return BrokerConnections(
        commands=RedisBroker(command), subscription=RedisSubscription(receive)
    )


def redis_connection_factory(url: str) -> ConnectionFactory:
    async def factory() -> BrokerConnections:
        return await open_redis_connections(url)

    return factory
