"""
Repository contract consumed by the API routes and the chat socket.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional


class MarketplaceRepository(ABC):
    """Data access for the marketplace endpoints."""

    async def start(self):
        """Open connections. Default: nothing to do."""

    async def stop(self):
        """Release connections. Default: nothing to do."""

    async def check(self) -> str:
        """Health probe returning ``"ok"`` or an error description."""
        return "ok"

    @abstractmethod
    async def get_explorer_stats(self, user_id: int) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def get_explorer_recent_bookings(self, user_id: int, limit: int = 5) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def get_as_stats(self, user_id: int) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def get_as_recent_bookings(self, user_id: int, limit: int = 5) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def list_services(
        self,
        page: int,
        limit: int,
        category_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Return ``{"services": [...], "total": int}``."""

    @abstractmethod
    async def get_service(self, service_id: int) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def create_service(self, provider_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def update_service(self, service_id: int, provider_id: int, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Apply ``data`` to a service owned by ``provider_id``; None if absent."""

    @abstractmethod
    async def delete_service(self, service_id: int, provider_id: int) -> bool:
        ...

    @abstractmethod
    async def list_categories(self) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def is_chat_participant(self, chat_room_id: str, user_id: int) -> bool:
        ...

    @abstractmethod
    async def save_chat_message(
        self,
        chat_room_id: str,
        sender_id: int,
        content: str,
        message_type: str = "text",
    ) -> Dict[str, Any]:
        ...
