from .broker import (
    Broker,
    BrokerConnections,
    BrokerEvent,
    BrokerEventKind,
    RedisBroker,
    RedisSubscription,
    Subscription,
    open_redis_connections,
)
from .config import DEFAULT_HEARTBEAT_INTERVAL, DEFAULT_KEY_PREFIX, CloudsSettings
from .model import (
    BrokerError,
    CloudsError,
    Envelope,
    EnvelopeDecodeError,
    MessageType,
    ServiceNotFoundError,
    TeardownError,
    UnknownMessageTypeError,
)
from .namespace import KeyNamespace, new_node_id
from .registry import Service, ServiceRegistry
from .serialization import EnvelopeCodec, JsonSerializer

__all__ = [
    "Broker",
    "BrokerConnections",
    "BrokerError",
    "BrokerEvent",
    "BrokerEventKind",
    "CloudsError",
    "CloudsSettings",
    "DEFAULT_HEARTBEAT_INTERVAL",
    "DEFAULT_KEY_PREFIX",
    "Envelope",
    "EnvelopeCodec",
    "EnvelopeDecodeError",
    "JsonSerializer",
    "KeyNamespace",
    "MessageType",
    "RedisBroker",
    "RedisSubscription",
    "Service",
    "ServiceNotFoundError",
    "ServiceRegistry",
    "Subscription",
    "TeardownError",
    "UnknownMessageTypeError",
    "new_node_id",
    "open_redis_connections",
]
