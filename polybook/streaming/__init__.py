"""
Streaming Module
================

Market channel connectivity: the WebSocket transport and the supervisor
that keeps it connected, subscribed and alive.
"""

from .transport import FeedTransport
from .supervisor import (
    ConnectionSupervisor,
    ConnectionState,
    HeartbeatState,
    ReconnectState,
    compute_backoff_delay
)

__all__ = [
    'FeedTransport',
    'ConnectionSupervisor',
    'ConnectionState',
    'HeartbeatState',
    'ReconnectState',
    'compute_backoff_delay'
]
