"""
Service presence advertising.

Each (service, node) pair owns one heartbeat key holding a score. The key
lives for twice the heartbeat interval and is refreshed once per interval,
so it only expires when the node stops refreshing it.

The score itself belongs to whoever balances calls across nodes: a refresh
rewrites whatever value is stored. Only a missing or unreadable key is
replaced, with score 0.
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from typing import Protocol

from loguru import logger

from clouds.core.broker import Broker
from clouds.core.config import heartbeat_ttl
from clouds.core.model import BrokerError
from clouds.core.namespace import KeyNamespace
from clouds.core.types import DurationSeconds, NodeId, Score, ServiceName

INITIAL_SCORE: Score = "0"


class ServiceNames(Protocol):
    def names(self) -> tuple[ServiceName, ...]: ...


def parse_score(raw: bytes | str | None) -> Score | None:
    """Return the stored score if it is a usable non-negative number."""
    if raw is None:
        return None
    try:
        text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
        value = float(text)
    except (UnicodeDecodeError, ValueError):
        return None
    if not math.isfinite(value) or value < 0:
        return None
    return text


@dataclass(slots=True)
class ServiceHeartbeat:
    broker: Broker
    namespace: KeyNamespace
    node_id: NodeId
    interval: DurationSeconds

    @property
    def ttl(self) -> DurationSeconds:
        return heartbeat_ttl(self.interval)

    async def reset_service_score(self, name: ServiceName) -> None:
        """Unconditionally (re)create the heartbeat key with score 0."""
        key = self.namespace.heartbeat_key(name, self.node_id)
        logger.debug("[{}] Reset service score: {} key={}", self.node_id, name, key)
        await self.broker.setex(key, self.ttl, INITIAL_SCORE)

    async def keep_service_score(self, name: ServiceName) -> None:
        """Extend the heartbeat key's lifetime, keeping its current score."""
        key = self.namespace.heartbeat_key(name, self.node_id)
        logger.debug("[{}] Keep service score: {} key={}", self.node_id, name, key)
        try:
            score = parse_score(await self.broker.get(key))
        except BrokerError as e:
            logger.warning("[{}] Reading {} failed, resetting: {}", self.node_id, key, e)
            score = None

        if score is None:
            await self.reset_service_score(name)
            return

        await self.broker.setex(key, self.ttl, score)

    async def heartbeat(self, registry: ServiceNames) -> None:
        """Refresh every registered service independently."""
        names = registry.names()
        logger.debug("[{}] Heartbeat for {} service(s)", self.node_id, len(names))
        results = await asyncio.gather(
            *(self.keep_service_score(name) for name in names),
            return_exceptions=True,
        )
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                logger.warning(
                    "[{}] Heartbeat for service {} failed: {}",
                    self.node_id,
                    name,
                    result,
                )
