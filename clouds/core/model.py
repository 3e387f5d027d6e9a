from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from clouds.core.types import CorrelationId, NodeId, ServiceName

SERVICE_NOT_FOUND = "service handler not found"
UNKNOWN_MESSAGE_TYPE = "unknown message type"


class MessageType(StrEnum):
    CALL = "call"
    MESSAGE = "message"
    RESULT = "result"


class Envelope(BaseModel):
    """
    The unit exchanged between nodes over listen channels.

    ``type`` is deliberately a plain string: envelopes with a type this node
    does not understand still decode, so the sender can be told about it.
    """

    type: str = Field(description="One of call, message or result.")
    sender: str = Field(description="Node id of the originating node.")
    id: str | None = Field(
        default=None, description="Correlation id linking a call to its result."
    )
    name: str | None = Field(
        default=None, description="Service name targeted by a call."
    )
    args: list[Any] = Field(
        default_factory=list,
        description="Call arguments, message payload or call results.",
    )
    error: str | None = Field(
        default=None, description="Failure description carried by a result."
    )

    @classmethod
    def call(
        cls,
        sender: NodeId,
        id: CorrelationId,
        name: ServiceName,
        args: list[Any] | tuple[Any, ...] = (),
    ) -> Envelope:
        return cls(type=MessageType.CALL, sender=sender, id=id, name=name, args=list(args))

    @classmethod
    def message(cls, sender: NodeId, payload: Any) -> Envelope:
        return cls(type=MessageType.MESSAGE, sender=sender, args=[payload])

    @classmethod
    def result(
        cls,
        sender: NodeId,
        id: CorrelationId | None,
        error: str | None = None,
        args: list[Any] | tuple[Any, ...] = (),
    ) -> Envelope:
        return cls(
            type=MessageType.RESULT, sender=sender, id=id, error=error, args=list(args)
        )


class CloudsError(Exception):
    """Base class for every error raised by clouds."""


class EnvelopeDecodeError(CloudsError):
    """A raw payload could not be turned into an envelope."""


class BrokerError(CloudsError):
    """A broker command failed."""


class TeardownError(BrokerError):
    """Scanning or deleting this node's keys failed during exit."""


class ProtocolError(CloudsError):
    """A well-formed envelope that this node cannot serve."""

    message: str = "protocol error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(self.message)
        self.detail = detail


class ServiceNotFoundError(ProtocolError):
    message = SERVICE_NOT_FOUND


class UnknownMessageTypeError(ProtocolError):
    message = UNKNOWN_MESSAGE_TYPE


def describe_error(exc: BaseException) -> str:
    """Flatten an exception into the string carried by ``Envelope.error``."""
    return str(exc) or type(exc).__name__
