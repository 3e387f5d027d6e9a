from abc import ABC, abstractmethod
from typing import Any

import orjson
from pydantic import ValidationError

from clouds.core.model import Envelope, EnvelopeDecodeError, MessageType


class Serializer(ABC):
    """Abstract base class for data serialization."""

    @abstractmethod
    def serialize(self, data: Any) -> bytes:
        """Serializes data into bytes."""
        pass

    @abstractmethod
    def deserialize(self, data: bytes) -> Any:
        """Deserializes bytes into data."""
        pass


class JsonSerializer(Serializer):
    """Serializer implementation using orjson for JSON serialization."""

    def serialize(self, data: Any) -> bytes:
        """Serializes data to JSON bytes using orjson."""

        # orjson can't serialize sets directly, convert to list
        def default(obj: Any) -> Any:
            if isinstance(obj, set | frozenset):
                return list(obj)
            raise TypeError

        return orjson.dumps(data, default=default)

    def deserialize(self, data: bytes) -> Any:
        """Deserializes JSON bytes to data using orjson."""
        return orjson.loads(data)


class EnvelopeCodec:
    """Turns envelopes into broker payloads and back."""

    def __init__(self, serializer: Serializer | None = None) -> None:
        self.serializer = serializer or JsonSerializer()

    def encode(self, envelope: Envelope) -> bytes:
        data: dict[str, Any] = {"type": str(envelope.type), "sender": envelope.sender}
        if envelope.id is not None:
            data["id"] = envelope.id
        if envelope.name is not None:
            data["name"] = envelope.name
        data["args"] = envelope.args
        # results always say whether they failed
        if envelope.type == MessageType.RESULT or envelope.error is not None:
            data["error"] = envelope.error
        return self.serializer.serialize(data)

    def decode(self, raw: bytes | str) -> Envelope:
        if isinstance(raw, str):
            raw = raw.encode("utf-8")
        try:
            data = self.serializer.deserialize(raw)
        except (orjson.JSONDecodeError, TypeError, ValueError) as e:
            raise EnvelopeDecodeError(f"payload is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise EnvelopeDecodeError(
                f"payload must be an object, got {type(data).__name__}"
            )
        try:
            return Envelope.model_validate(data)
        except ValidationError as e:
            raise EnvelopeDecodeError(f"payload is not an envelope: {e}") from e
