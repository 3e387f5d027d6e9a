"""Node identity and broker key layout.

Every key or channel a node touches is built here:

    [prefix:]S:<service>:<node id>    heartbeat key for one service
    [prefix:]L:<node id>              listen channel of one node
"""

from __future__ import annotations

from dataclasses import dataclass

import ulid

from clouds.core.types import BrokerKey, ChannelName, KeyPattern, NodeId, ServiceName

KEY_SEPARATOR = ":"
SERVICE_SEGMENT = "S"
LISTEN_SEGMENT = "L"


def new_node_id(role: str = "server") -> NodeId:
    """Return an id unique among all nodes sharing a broker.

    ULIDs combine a millisecond timestamp with 80 random bits, so two
    processes started in the same millisecond still get distinct ids.
    """
    return f"{role}-{ulid.new()}"


@dataclass(frozen=True, slots=True)
class KeyNamespace:
    prefix: str = ""

    def key(self, *segments: str) -> BrokerKey:
        parts = [self.prefix, *segments] if self.prefix else list(segments)
        return KEY_SEPARATOR.join(parts)

    def heartbeat_key(self, service: ServiceName, node_id: NodeId) -> BrokerKey:
        return self.key(SERVICE_SEGMENT, service, node_id)

    def listen_channel(self, node_id: NodeId) -> ChannelName:
        return self.key(LISTEN_SEGMENT, node_id)

    def owned_keys_pattern(self, node_id: NodeId) -> KeyPattern:
        """Glob matching every key whose name contains ``node_id``."""
        return self.key(f"*{node_id}*")
