"""
Chat socket frame handlers for the API service.

Frames are JSON objects ``{"event": str, "data": any, "ack": int | null}``.
A frame carrying an ``ack`` id is answered with
``{"event": "ack", "ack": <id>, "data": <result>}``.
"""

import json
from dataclasses import dataclass
from typing import Dict, Any, Optional, TYPE_CHECKING

from shared.errors import FixiaException
from shared.logging import get_logger
from .connection_manager import ChatConnectionManager
from ..persistence import MarketplaceRepository

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


MAX_MESSAGE_LENGTH = 5000
MESSAGE_TYPES = ("text", "image", "file", "system")


def room_name(chat_room_id: str) -> str:
    return f"chat_{chat_room_id}"


@dataclass
class ChatFrame:
    """Inbound chat socket frame."""
    event: str
    data: Any
    ack: Optional[int]
    connection_id: str


class ChatMessageHandler:
    """Routes inbound chat frames."""

    def __init__(
        self,
        connection_manager: ChatConnectionManager,
        repository: MarketplaceRepository,
        metrics: Optional["MetricsCollector"] = None
    ):
        self.connection_manager = connection_manager
        self.repository = repository
        self.metrics = metrics
        self.logger = get_logger("api.ws.handler")

        self._handlers = {
            "join_chat": self._handle_join_chat,
            "leave_chat": self._handle_leave_chat,
            "send_message": self._handle_send_message,
            "ping": self._handle_ping,
        }

    async def handle_message(self, connection_id: str, message_text: str) -> Optional[Dict[str, Any]]:
        """Handle one inbound frame and return the reply frame, if any."""
        try:
            payload = json.loads(message_text)
            if not isinstance(payload, dict):
                raise ValueError("Frame must be a JSON object")

            event = payload.get("event")
            if not event:
                raise ValueError("Frame must have 'event' field")

            frame = ChatFrame(
                event=event,
                data=payload.get("data"),
                ack=payload.get("ack"),
                connection_id=connection_id
            )
        except json.JSONDecodeError as e:
            self.logger.error("Invalid JSON frame", error=str(e))
            return self._error("INVALID_JSON", "Frame must be valid JSON")
        except ValueError as e:
            self.logger.error("Invalid frame format", error=str(e))
            return self._error("INVALID_FORMAT", str(e))

        self.connection_manager.update_heartbeat(connection_id)

        handler = self._handlers.get(frame.event)
        if handler is None:
            return self._reply(frame, self._error_data("UNKNOWN_EVENT", f"Unknown event: {frame.event}"))

        try:
            result = await handler(frame)
        except FixiaException as e:
            self.logger.warning("Chat event failed", event_name=frame.event, code=e.code, message=e.message)
            result = {"success": False, "error": e.message}
        except Exception as e:
            self.logger.error("Error handling chat event", event_name=frame.event, error=str(e))
            result = {"success": False, "error": "Internal server error"}

        return self._reply(frame, result)

    async def _handle_join_chat(self, frame: ChatFrame) -> Optional[Dict[str, Any]]:
        chat_room_id = self._chat_id(frame.data)
        if chat_room_id is None:
            return {"success": False, "error": "chat id is required"}

        connection = self.connection_manager.get_connection(frame.connection_id)
        if connection is None:
            return {"success": False, "error": "Connection not found"}

        if not await self.repository.is_chat_participant(chat_room_id, connection.user_id):
            return {"success": False, "error": "Not a participant of this chat"}

        self.connection_manager.join_room(frame.connection_id, room_name(chat_room_id))
        return {"success": True, "chat_room_id": chat_room_id}

    async def _handle_leave_chat(self, frame: ChatFrame) -> Optional[Dict[str, Any]]:
        chat_room_id = self._chat_id(frame.data)
        if chat_room_id is None:
            return {"success": False, "error": "chat id is required"}

        self.connection_manager.leave_room(frame.connection_id, room_name(chat_room_id))
        return {"success": True, "chat_room_id": chat_room_id}

    async def _handle_send_message(self, frame: ChatFrame) -> Dict[str, Any]:
        data = frame.data if isinstance(frame.data, dict) else {}
        chat_room_id = self._chat_id(data.get("chat_room_id"))
        content = data.get("content")
        message_type = data.get("message_type", "text")

        if chat_room_id is None or not isinstance(content, str) or not content.strip():
            self._record_message("rejected")
            return {"success": False, "error": "chat_room_id and content are required"}
        if len(content) > MAX_MESSAGE_LENGTH:
            self._record_message("rejected")
            return {"success": False, "error": "Message too long"}
        if message_type not in MESSAGE_TYPES:
            self._record_message("rejected")
            return {"success": False, "error": f"Unsupported message type: {message_type}"}

        connection = self.connection_manager.get_connection(frame.connection_id)
        if connection is None:
            return {"success": False, "error": "Connection not found"}

        if not await self.repository.is_chat_participant(chat_room_id, connection.user_id):
            self._record_message("rejected")
            return {"success": False, "error": "Not a participant of this chat"}

        try:
            message = await self.repository.save_chat_message(
                chat_room_id, connection.user_id, content.strip(), message_type
            )
        except FixiaException:
            self._record_message("failed")
            raise

        self._record_message("sent")
        await self.connection_manager.broadcast_to_room(
            room_name(chat_room_id),
            {"event": "new_chat_message", "data": message},
            exclude_connections={frame.connection_id}
        )
        return {"success": True, "message": message}

    async def _handle_ping(self, frame: ChatFrame) -> Dict[str, Any]:
        await self.connection_manager.send_event(frame.connection_id, {"event": "pong", "data": frame.data})
        return {"success": True}

    @staticmethod
    def _chat_id(value: Any) -> Optional[str]:
        if isinstance(value, dict):
            value = value.get("chat_room_id") or value.get("chatId")
        if value is None or isinstance(value, bool):
            return None
        value = str(value).strip()
        return value or None

    @staticmethod
    def _reply(frame: ChatFrame, result: Any) -> Optional[Dict[str, Any]]:
        if frame.ack is None:
            if isinstance(result, dict) and result.get("success") is False:
                return {"event": "error", "data": result}
            return None
        return {"event": "ack", "ack": frame.ack, "data": result}

    @staticmethod
    def _error_data(code: str, message: str) -> Dict[str, Any]:
        return {"success": False, "error": message, "code": code}

    def _error(self, code: str, message: str) -> Dict[str, Any]:
        return {"event": "error", "data": self._error_data(code, message)}

    def _record_message(self, status: str):
        if self.metrics:
            self.metrics.increment_counter("chat_messages_total", status=status)
