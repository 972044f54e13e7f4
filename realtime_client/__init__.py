"""
Realtime chat client for Fixia.

Modules:
- session: connection ownership, reconnection, heartbeat and subscriptions
- transport: transport contract and the websocket implementation
- quality: latency history and connection quality
- query_cache: client-side query results invalidated by pushed events
- config: pydantic-settings configuration
"""

from .config import RealtimeSettings
from .quality import ConnectionQuality, LatencyTracker, classify_latency
from .query_cache import QueryCache, chat_list_key, chat_messages_key
from .session import RealtimeSessionManager, SessionSnapshot, SessionState
from .transport import DisconnectCause, Transport, WebSocketTransport

__all__ = [
    "ConnectionQuality",
    "DisconnectCause",
    "LatencyTracker",
    "QueryCache",
    "RealtimeSessionManager",
    "RealtimeSettings",
    "SessionSnapshot",
    "SessionState",
    "Transport",
    "WebSocketTransport",
    "chat_list_key",
    "chat_messages_key",
    "classify_latency",
]
