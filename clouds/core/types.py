"""
Semantic type aliases for clouds.

Raw ``str``/``float`` values travel through most of the node; these aliases
say which ones are node ids, broker keys and so on.
"""

from typing import Any, TypeAlias

NodeId: TypeAlias = str
ServiceName: TypeAlias = str
CorrelationId: TypeAlias = str
BrokerKey: TypeAlias = str
ChannelName: TypeAlias = str
KeyPattern: TypeAlias = str
DurationSeconds: TypeAlias = float
Score: TypeAlias = str

MessagePayload: TypeAlias = Any
