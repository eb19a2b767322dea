"""Streaming connection layer module."""

from .base import (
    ConnectionState,
    WebSocketChannel,
    SubscriptionKey,
    PRIVATE_CHANNELS,
)
from .registry import SubscriptionRegistry, SubscriptionSnapshot
from .heartbeat import HeartbeatMonitor
from .reconnect import ReconnectScheduler
from .manager import ConnectionManager, EVENT_TYPES

__all__ = [
    "ConnectionState",
    "WebSocketChannel",
    "SubscriptionKey",
    "PRIVATE_CHANNELS",
    "SubscriptionRegistry",
    "SubscriptionSnapshot",
    "HeartbeatMonitor",
    "ReconnectScheduler",
    "ConnectionManager",
    "EVENT_TYPES",
]
