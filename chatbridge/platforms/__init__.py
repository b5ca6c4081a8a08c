"""
Platform adapters.

Each adapter turns one chat service into a stream of ChatMessage objects and
delivers ChatResponse objects back. The concrete adapters are imported lazily
by the runner so a missing platform library only matters when that platform
is enabled.
"""

from chatbridge.platforms.base import (
    AdapterState,
    BasePlatformAdapter,
    ChatMessage,
    ChatResponse,
    ChatUser,
    MessageType,
)
from chatbridge.platforms.health import MAX_CONSECUTIVE_FAILURES, ConnectionHealth

__all__ = [
    "AdapterState",
    "BasePlatformAdapter",
    "ChatMessage",
    "ChatResponse",
    "ChatUser",
    "ConnectionHealth",
    "MAX_CONSECUTIVE_FAILURES",
    "MessageType",
]
