"""
Local notifications raised by a node.

- listening: the receive connection's subscription was acknowledged
- message: a ``message`` envelope arrived; listeners get (sender, args)

Listeners run synchronously, in registration order, on the event loop.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, TypeAlias

from loguru import logger

from clouds.core.types import ChannelName, NodeId

MessageListener: TypeAlias = Callable[[NodeId, list[Any]], None]
ListeningListener: TypeAlias = Callable[[ChannelName], None]


@dataclass(slots=True)
class NodeEvents:
    _message_listeners: list[MessageListener] = field(default_factory=list)
    _listening_listeners: list[ListeningListener] = field(default_factory=list)

    def on_message(self, listener: MessageListener) -> Callable[[], None]:
        """Subscribe to incoming messages. Returns an unsubscribe function."""
        self._message_listeners.append(listener)
        return lambda: self._discard(self._message_listeners, listener)

    def on_listening(self, listener: ListeningListener) -> Callable[[], None]:
        """Subscribe to subscription acknowledgements."""
        self._listening_listeners.append(listener)
        return lambda: self._discard(self._listening_listeners, listener)

    def emit_message(self, sender: NodeId, args: list[Any]) -> None:
        for listener in tuple(self._message_listeners):
            try:
                listener(sender, args)
            except Exception as e:
                logger.error("Message listener {!r} failed: {}", listener, e)

    def emit_listening(self, channel: ChannelName) -> None:
        for listener in tuple(self._listening_listeners):
            try:
                listener(channel)
            except Exception as e:
                logger.error("Listening listener {!r} failed: {}", listener, e)

    @staticmethod
    def _discard(listeners: list[Any], listener: Any) -> None:
        try:
            listeners.remove(listener)
        except ValueError:
            pass
