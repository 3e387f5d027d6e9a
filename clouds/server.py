from __future__ import annotations

import asyncio
import sys
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any, Self, TypeAlias

from loguru import logger

from .core.broker import (
    BrokerConnections,
    BrokerEventKind,
    ConnectionFactory,
    redis_connection_factory,
)
from .core.config import CloudsSettings
from .core.dispatcher import MessageDispatcher, PublishCallback
from .core.events import ListeningListener, MessageListener, NodeEvents
from .core.heartbeat import ServiceHeartbeat
from .core.model import BrokerError, CloudsError, TeardownError
from .core.namespace import KeyNamespace, new_node_id
from .core.registry import Service, ServiceRegistry
from .core.timer import RepeatingTask
from .core.types import ChannelName, MessagePayload, NodeId, ServiceName

RegisterCallback: TypeAlias = Callable[[BaseException | None], None]


def rpc_service(name: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator marking a function as a service for ``register_module``.

    Args:
        name: The service name the function is registered under.
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        setattr(func, "_clouds_service_name", name)
        return func

    return decorator


############################################
#
# Default services
#
############################################
@rpc_service(name="echo")
def echo(arg: Any) -> Any:
    """Single-argument echo demo."""
    return arg


@rpc_service(name="echos")
def echos(*args: Any) -> tuple[Any, ...]:
    """Multi-argument echo demo."""
    return args


############################################
#
# Node
#
############################################
@dataclass(slots=True)
class CloudsServer:
    """One node of the cloud.

    The node registers named services, keeps their heartbeat keys alive,
    answers calls arriving on its listen channel and surfaces plain
    messages to local listeners.

    Use as:
        server = CloudsServer(CloudsSettings(prefix="demo"))
        server.register("add", lambda a, b: a + b)
        await server.start()
        ...
        await server.exit()
    """

    settings: CloudsSettings = field(default_factory=CloudsSettings)
    connection_factory: ConnectionFactory | None = None
    id: NodeId = field(init=False)
    namespace: KeyNamespace = field(init=False)
    registry: ServiceRegistry = field(init=False, default_factory=ServiceRegistry)
    events: NodeEvents = field(init=False, default_factory=NodeEvents)
    connections: BrokerConnections | None = field(init=False, default=None)
    heartbeat: ServiceHeartbeat | None = field(init=False, default=None)
    dispatcher: MessageDispatcher | None = field(init=False, default=None)
    _timer: RepeatingTask | None = field(init=False, default=None)
    _listener_task: asyncio.Task[None] | None = field(init=False, default=None)
    _listening: asyncio.Event = field(init=False, default_factory=asyncio.Event)
    _shutdown_event: asyncio.Event = field(init=False, default_factory=asyncio.Event)
    _closing: bool = field(init=False, default=False)
    _tick_lock: asyncio.Lock = field(init=False, default_factory=asyncio.Lock)
    _pending_resets: dict[ServiceName, RegisterCallback | None] = field(
        init=False, default_factory=dict
    )
    _background_tasks: set[asyncio.Task[Any]] = field(init=False, default_factory=set)

    def __post_init__(self) -> None:
        self.id = new_node_id(self.settings.role)
        self.namespace = KeyNamespace(self.settings.prefix)
        if self.connection_factory is None:
            self.connection_factory = redis_connection_factory(self.settings.redis_url)

    @property
    def listen_channel(self) -> ChannelName:
        return self.namespace.listen_channel(self.id)

    @property
    def services(self) -> tuple[ServiceName, ...]:
        return self.registry.names()

    @property
    def started(self) -> bool:
        return self.connections is not None

    @property
    def listening(self) -> bool:
        return self._listening.is_set()

    ############################################
    #
    # Services
    #
    ############################################
    def register(
        self,
        name: ServiceName,
        handler: Callable[..., Any],
        callback: RegisterCallback | None = None,
    ) -> Self:
        """Register (or replace) the service ``name``.

        The heartbeat key is reset in the background; ``callback`` receives
        the outcome. Before ``start()`` the reset is deferred until the
        node is connected.
        """
        logger.debug("[{}] Register: {} => {!r}", self.id, name, handler)
        if self.registry.register(Service(name, handler)) is not None:
            logger.info("[{}] Service {} replaced", self.id, name)

        if self.heartbeat is None or self._closing:
            # written by the next start(), never behind exit()'s bulk delete
            self._pending_resets[name] = callback
        else:
            self._spawn(self._reset_score(name, callback))
        return self

    def register_module(self, obj: Any) -> Self:
        """Register every ``@rpc_service`` callable found on ``obj``."""
        for attr in dir(obj):
            func = getattr(obj, attr)
            name = getattr(func, "_clouds_service_name", None)
            if callable(func) and name is not None:
                self.register(name, func)
        return self

    async def _reset_score(
        self, name: ServiceName, callback: RegisterCallback | None
    ) -> None:
        assert self.heartbeat is not None
        error: BaseException | None = None
        try:
            await self.heartbeat.reset_service_score(name)
        except BrokerError as e:
            logger.warning("[{}] Resetting score of {} failed: {}", self.id, name, e)
            error = e
        if callback is not None:
            callback(error)

    async def _heartbeat_tick(self) -> None:
        async with self._tick_lock:
            if self._closing or self.heartbeat is None:
                return
            await self.heartbeat.heartbeat(self.registry)

    ############################################
    #
    # Messaging
    #
    ############################################
    def on_message(self, listener: MessageListener) -> Callable[[], None]:
        return self.events.on_message(listener)

    def on_listening(self, listener: ListeningListener) -> Callable[[], None]:
        return self.events.on_listening(listener)

    async def send(
        self,
        receiver: NodeId,
        payload: MessagePayload,
        callback: PublishCallback | None = None,
    ) -> None:
        """Send a one-way message to the node ``receiver``."""
        if self.dispatcher is None:
            raise CloudsError(f"Node {self.id} is not started")
        await self.dispatcher.send(receiver, payload, callback)

    async def _listen(self) -> None:
        assert self.connections is not None and self.dispatcher is not None
        try:
            async for event in self.connections.subscription.events():
                if event.kind is BrokerEventKind.SUBSCRIBED:
                    logger.debug(
                        "[{}] Subscribe succeed: channel={} count={}",
                        self.id,
                        event.channel,
                        event.data,
                    )
                    if event.channel == self.listen_channel:
                        self._listening.set()
                        self.events.emit_listening(event.channel)
                elif isinstance(event.data, bytes):
                    await self.dispatcher.handle(event.channel, event.data)
        except asyncio.CancelledError:
            logger.debug("[{}] Listener task cancelled.", self.id)
            raise
        except Exception as e:
            logger.error("[{}] Receive loop stopped: {}", self.id, e)
        else:
            logger.error("[{}] Receive loop ended: subscription closed", self.id)
        self._receive_lost()

    def _receive_lost(self) -> None:
        """A node that cannot receive calls must stop advertising services.

        Heartbeat ticks become no-ops so every key lapses within one TTL,
        and ``serve()`` wakes up to run the full ``exit()``.
        """
        self._closing = True
        self._listening.clear()
        self._shutdown_event.set()

    ############################################
    #
    # Lifecycle
    #
    ############################################
    async def start(self) -> None:
        """Connect, subscribe to the listen channel and start heartbeats.

        Returns once the broker has acknowledged the subscription. Failing
        to open the connections is fatal for this node.
        """
        if self.started:
            return
        # tasks created while starting inherit the node id in their log records
        with logger.contextualize(node=self.id):
            await self._start()

    async def _start(self) -> None:
        assert self.connection_factory is not None
        # a node can be started again after exit()
        self._closing = False
        self._shutdown_event.clear()

        logger.info("[{}] Starting node, listen channel {}", self.id, self.listen_channel)
        self.connections = await self.connection_factory()
        self.heartbeat = ServiceHeartbeat(
            broker=self.connections.commands,
            namespace=self.namespace,
            node_id=self.id,
            interval=self.settings.heartbeat,
        )
        self.dispatcher = MessageDispatcher(
            node_id=self.id,
            namespace=self.namespace,
            broker=self.connections.commands,
            registry=self.registry,
            events=self.events,
        )

        try:
            await self._subscribe()
        except BrokerError:
            await self._cancel_background_work()
            connections, self.connections = self.connections, None
            self.heartbeat = None
            self.dispatcher = None
            await connections.close()
            raise

        pending, self._pending_resets = self._pending_resets, {}
        for name, callback in pending.items():
            self._spawn(self._reset_score(name, callback))

        self._timer = RepeatingTask(
            self.settings.heartbeat, self._heartbeat_tick, name=f"heartbeat:{self.id}"
        )
        self._timer.start()
        logger.info(
            "[{}] Listening with {} service(s), heartbeat every {}s",
            self.id,
            len(self.registry),
            self.settings.heartbeat,
        )

    async def _subscribe(self) -> None:
        assert self.connections is not None
        await self.connections.subscription.subscribe(self.listen_channel)
        self._listener_task = asyncio.create_task(
            self._listen(), name=f"listen:{self.id}"
        )
        acknowledged = asyncio.create_task(self._listening.wait())
        await asyncio.wait(
            {acknowledged, self._listener_task}, return_when=asyncio.FIRST_COMPLETED
        )
        if not self._listening.is_set():
            acknowledged.cancel()
            raise BrokerError(
                f"Subscription to {self.listen_channel} ended before acknowledgement"
            )

    async def exit(self) -> None:
        """Remove this node's keys, stop heartbeats and close connections.

        A failing key scan or delete raises ``TeardownError`` and leaves the
        timer and connections as they are; the keys still expire on their
        own once heartbeats stop.
        """
        if self.connections is None:
            logger.debug("[{}] Exit before start, nothing to tear down", self.id)
            return
        logger.info("[{}] Exit", self.id)
        self._closing = True
        commands = self.connections.commands

        # let a running refresh or score reset land before the keys are removed
        async with self._tick_lock:
            if self._background_tasks:
                await asyncio.gather(*self._background_tasks, return_exceptions=True)

        pattern = self.namespace.owned_keys_pattern(self.id)
        logger.debug("[{}] Exit: query all related keys={}", self.id, pattern)
        try:
            keys = await commands.keys(pattern)
        except BrokerError as e:
            raise TeardownError(f"Scanning keys of {self.id} failed: {e}") from e

        if keys:
            logger.debug("[{}] Exit: delete all related keys={}", self.id, keys)
            try:
                await commands.delete(keys)
            except BrokerError as e:
                raise TeardownError(f"Deleting keys of {self.id} failed: {e}") from e

        logger.debug("[{}] Exit: clear timer", self.id)
        if self._timer is not None:
            await self._timer.cancel()
            self._timer = None

        await self._cancel_background_work()

        logger.debug("[{}] Exit: close broker connections", self.id)
        connections, self.connections = self.connections, None
        self.heartbeat = None
        self.dispatcher = None
        self._listening.clear()
        try:
            await connections.close()
        finally:
            self._shutdown_event.set()
        logger.info("[{}] Exit completed", self.id)

    async def _cancel_background_work(self) -> None:
        if self.dispatcher is not None:
            await self.dispatcher.abandon()

        tasks = list(self._background_tasks)
        self._background_tasks.clear()
        if self._listener_task is not None:
            tasks.append(self._listener_task)
            self._listener_task = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def serve(self) -> None:
        """Start the node and keep it running until ``exit()``."""
        await self.start()
        try:
            await self._shutdown_event.wait()
        finally:
            if self.started:
                await self.exit()

    def run(self) -> None:
        try:
            asyncio.run(self.serve())
        except KeyboardInterrupt:
            logger.warning("[{}] Interrupted, keys expire on their own", self.id)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        with logger.contextualize(node=self.id):
            task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)


def default_services() -> Any:
    """The module holding the built-in ``echo``/``echos`` services."""
    return sys.modules[__name__]
