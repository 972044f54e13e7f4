"""
Chat socket support for the API service.
"""

from .connection_manager import ChatConnection, ChatConnectionManager
from .handlers import ChatMessageHandler, room_name

__all__ = [
    "ChatConnection",
    "ChatConnectionManager",
    "ChatMessageHandler",
    "room_name",
]
