"""
callrelay: an asyncio-first client for a chat and call-signaling relay.

It keeps a resilient WebSocket connection to the relay, reconciles session
message logs across reconnects, and drives the offer/answer/ICE handshake of
one peer call at a time through a pluggable media engine.
"""

from __future__ import annotations

from .client import ClientConfig, RelayClient
from .exceptions import CallRelayError
from .socket_config import ReconnectPolicy, SocketConfig

__all__ = [
    "CallRelayError",
    "ClientConfig",
    "ReconnectPolicy",
    "RelayClient",
    "SocketConfig",
]

__version__ = "0.1.0"
