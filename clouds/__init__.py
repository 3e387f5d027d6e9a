"""
Clouds - peer-to-peer RPC and messaging nodes over a shared broker

Every node registers named services, advertises them through TTL-bound
heartbeat keys, and listens on its own channel for calls and messages.
Call results are published back to the caller's channel.

## Quick Start

```python
from clouds import CloudsServer, CloudsSettings

server = CloudsServer(CloudsSettings(redis_url="redis://127.0.0.1:6379/0"))
server.register("add", lambda a, b: a + b)

await server.start()
...
await server.exit()
```
"""

from .core import (
    BrokerError,
    CloudsError,
    CloudsSettings,
    Envelope,
    EnvelopeCodec,
    KeyNamespace,
    MessageType,
    TeardownError,
)
from .server import CloudsServer, rpc_service

__version__ = "1.0.0"
__license__ = "MIT"

__all__ = [
    "BrokerError",
    "CloudsError",
    "CloudsServer",
    "CloudsSettings",
    "Envelope",
    "EnvelopeCodec",
    "KeyNamespace",
    "MessageType",
    "TeardownError",
    "rpc_service",
]
