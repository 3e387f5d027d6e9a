"""
Inbound envelope routing.

Every raw payload received on the listen channel goes through
``MessageDispatcher.handle``:

    decode -> check channel -> call    : run service, publish one result
                               message : notify local listeners
                               result  : drop, nodes never issue calls
                               other   : publish an "unknown message type" result

Calls run as independent tasks so a slow service never holds up the
receive loop or other calls. Results go out in completion order.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, TypeAlias

from loguru import logger

from clouds.core.broker import Broker
from clouds.core.events import NodeEvents
from clouds.core.model import (
    BrokerError,
    Envelope,
    EnvelopeDecodeError,
    MessageType,
    ProtocolError,
    ServiceNotFoundError,
    UnknownMessageTypeError,
    describe_error,
)
from clouds.core.namespace import KeyNamespace
from clouds.core.registry import Service, ServiceRegistry
from clouds.core.serialization import EnvelopeCodec
from clouds.core.types import ChannelName, MessagePayload, NodeId

PublishCallback: TypeAlias = Callable[[BaseException | None], None]


def results_of(value: Any) -> list[Any]:
    """Map a service's return value onto the ``args`` of its result."""
    if value is None:
        return []
    if isinstance(value, tuple):
        return list(value)
    return [value]


@dataclass(slots=True)
class DispatchStats:
    received: int = 0
    dropped: int = 0
    calls: int = 0
    messages: int = 0
    results_sent: int = 0
    publish_failures: int = 0


@dataclass(slots=True)
class MessageDispatcher:
    node_id: NodeId
    namespace: KeyNamespace
    broker: Broker
    registry: ServiceRegistry
    events: NodeEvents
    codec: EnvelopeCodec = field(default_factory=EnvelopeCodec)
    stats: DispatchStats = field(default_factory=DispatchStats)
    _in_flight: set[asyncio.Task[None]] = field(default_factory=set)

    @property
    def listen_channel(self) -> ChannelName:
        return self.namespace.listen_channel(self.node_id)

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def handle(self, channel: ChannelName, raw: bytes) -> None:
        self.stats.received += 1
        logger.debug("[{}] Receive message: channel={} msg={!r}", self.node_id, channel, raw)

        try:
            envelope = self.codec.decode(raw)
        except EnvelopeDecodeError as e:
            # no trustworthy sender to answer, so the payload is dropped
            self.stats.dropped += 1
            logger.warning("[{}] Dropping undecodable message: {}", self.node_id, e)
            return

        if channel != self.listen_channel:
            self.stats.dropped += 1
            logger.debug("[{}] Message from unknown channel: {}", self.node_id, channel)
            return

        self.dispatch(envelope)

    def dispatch(self, envelope: Envelope) -> None:
        logger.debug(
            "[{}] Handle message: type={} sender={} id={} name={}",
            self.node_id,
            envelope.type,
            envelope.sender,
            envelope.id,
            envelope.name,
        )
        if envelope.type == MessageType.CALL:
            self._handle_call(envelope)
        elif envelope.type == MessageType.MESSAGE:
            self._handle_message(envelope)
        elif envelope.type == MessageType.RESULT:
            # answering a result would bounce results between nodes forever
            self.stats.dropped += 1
            logger.info(
                "[{}] Ignoring result {} from {}: nodes do not issue calls",
                self.node_id,
                envelope.id,
                envelope.sender,
            )
        else:
            self._spawn(self.respond_result(envelope, UnknownMessageTypeError()))

    def _handle_call(self, envelope: Envelope) -> None:
        self.stats.calls += 1
        try:
            if envelope.name is None:
                raise ServiceNotFoundError("call without a service name")
            service = self.registry.get(envelope.name)
        except ServiceNotFoundError as e:
            logger.info(
                "[{}] Call {} from {} for unknown service: {}",
                self.node_id,
                envelope.id,
                envelope.sender,
                e.detail,
            )
            self._spawn(self.respond_result(envelope, e))
            return
        self._spawn(self._run_call(service, envelope))

    def _handle_message(self, envelope: Envelope) -> None:
        self.stats.messages += 1
        logger.debug("[{}] On message: @{} => {}", self.node_id, envelope.sender, envelope.args)
        self.events.emit_message(envelope.sender, envelope.args)

    async def _run_call(self, service: Service, envelope: Envelope) -> None:
        error: BaseException | None = None
        results: list[Any] = []
        try:
            value = service(*envelope.args)
            if inspect.isawaitable(value):
                value = await value
            results = results_of(value)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                "[{}] Service {} failed for call {}: {}",
                self.node_id,
                service.name,
                envelope.id,
                e,
            )
            error = e
        await self.respond_result(envelope, error, results)

    async def respond_result(
        self,
        source: Envelope,
        error: BaseException | str | None = None,
        results: list[Any] | tuple[Any, ...] = (),
        callback: PublishCallback | None = None,
    ) -> None:
        """Publish the result of ``source`` to its sender's listen channel."""
        if isinstance(error, ProtocolError):
            error_text: str | None = error.message
        elif isinstance(error, BaseException):
            error_text = describe_error(error)
        else:
            error_text = error

        key = self.namespace.listen_channel(source.sender)
        logger.debug(
            "[{}] Response result: client={} key={} err={} args={}",
            self.node_id,
            source.sender,
            key,
            error_text,
            results,
        )
        envelope = Envelope.result(self.node_id, source.id, error_text, results)
        try:
            payload = self.codec.encode(envelope)
        except TypeError as e:
            logger.warning("[{}] Result of call {} not serializable: {}", self.node_id, source.id, e)
            envelope = Envelope.result(
                self.node_id, source.id, f"result not serializable: {e}"
            )
            payload = self.codec.encode(envelope)
        publish_error = await self._publish(key, payload)
        if publish_error is None:
            self.stats.results_sent += 1
        if callback is not None:
            callback(publish_error)

    async def send(
        self,
        receiver: NodeId,
        payload: MessagePayload,
        callback: PublishCallback | None = None,
    ) -> None:
        """Publish a one-way message to ``receiver``.

        Without a callback a broker failure is raised to the caller.
        """
        key = self.namespace.listen_channel(receiver)
        logger.debug("[{}] Send message: receiver={} key={}", self.node_id, receiver, key)
        error = await self._publish(
            key, self.codec.encode(Envelope.message(self.node_id, payload))
        )
        if callback is not None:
            callback(error)
        elif error is not None:
            raise error

    async def _publish(self, channel: ChannelName, payload: bytes) -> BrokerError | None:
        try:
            await self.broker.publish(channel, payload)
        except BrokerError as e:
            self.stats.publish_failures += 1
            logger.error("[{}] Publish to {} failed: {}", self.node_id, channel, e)
            return e
        return None

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def abandon(self) -> None:
        """Cancel every in-flight call without answering it."""
        tasks = list(self._in_flight)
        self._in_flight.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
