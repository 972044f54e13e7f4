"""
Shared fixtures for API service tests.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest
from jose import jwt

from service_api.app.main import ApiService
from service_api.app.persistence import MarketplaceRepository


class FakeMarketplaceRepository(MarketplaceRepository):
    """In-memory repository recording how often each query runs."""

    def __init__(self):
        self.calls: Dict[str, int] = {}
        self.failures: Dict[str, Exception] = {}
        self.categories = [
            {"id": 1, "name": "Plomería", "description": "Instalaciones y reparaciones", "icon": "wrench", "services_count": 1},
            {"id": 2, "name": "Electricidad", "description": "Trabajos eléctricos", "icon": "bolt", "services_count": 0},
        ]
        self.services: Dict[int, Dict[str, Any]] = {
            1: {
                "id": 1,
                "provider_id": 20,
                "category_id": 1,
                "title": "Reparación de cañerías",
                "description": "Arreglo de pérdidas y cañerías rotas",
                "price": Decimal("15000.00"),
                "duration_minutes": 60,
                "location": "Palermo",
                "is_active": True,
            }
        }
        self.chat_rooms = {"room-1": {10, 20}}
        self.messages: List[Dict[str, Any]] = []

    def _track(self, name: str):
        self.calls[name] = self.calls.get(name, 0) + 1
        if name in self.failures:
            raise self.failures[name]

    async def get_explorer_stats(self, user_id: int) -> Dict[str, Any]:
        self._track("get_explorer_stats")
        return {
            "active_bookings": 2,
            "completed_bookings": 5,
            "total_spent": Decimal("42000.50"),
            "favorite_services": 3,
            "unread_messages": user_id,
        }

    async def get_explorer_recent_bookings(self, user_id: int, limit: int = 5) -> List[Dict[str, Any]]:
        self._track("get_explorer_recent_bookings")
        return [{"id": 100, "status": "confirmed", "service_title": "Reparación de cañerías"}]

    async def get_as_stats(self, user_id: int) -> Dict[str, Any]:
        self._track("get_as_stats")
        return {
            "total_services": 4,
            "active_services": 3,
            "pending_requests": 1,
            "completed_bookings": 12,
            "total_earnings": Decimal("180000"),
            "average_rating": Decimal("4.666"),
            "total_reviews": 9,
            "profile_completion": 80,
        }

    async def get_as_recent_bookings(self, user_id: int, limit: int = 5) -> List[Dict[str, Any]]:
        self._track("get_as_recent_bookings")
        return []

    async def list_services(self, page: int, limit: int, category_id: Optional[int] = None) -> Dict[str, Any]:
        self._track("list_services")
        services = [
            service for service in self.services.values()
            if service["is_active"] and (category_id is None or service["category_id"] == category_id)
        ]
        start = (page - 1) * limit
        return {"services": services[start:start + limit], "total": len(services)}

    async def get_service(self, service_id: int) -> Optional[Dict[str, Any]]:
        self._track("get_service")
        return self.services.get(service_id)

    async def create_service(self, provider_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
        self._track("create_service")
        service_id = max(self.services, default=0) + 1
        service = {"id": service_id, "provider_id": provider_id, "is_active": True, **data}
        self.services[service_id] = service
        return service

    async def update_service(self, service_id: int, provider_id: int, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        self._track("update_service")
        service = self.services.get(service_id)
        if service is None or service["provider_id"] != provider_id:
            return None
        service.update(data)
        return service

    async def delete_service(self, service_id: int, provider_id: int) -> bool:
        self._track("delete_service")
        service = self.services.get(service_id)
        if service is None or service["provider_id"] != provider_id:
            return False
        del self.services[service_id]
        return True

    async def list_categories(self) -> List[Dict[str, Any]]:
        self._track("list_categories")
        return list(self.categories)

    async def is_chat_participant(self, chat_room_id: str, user_id: int) -> bool:
        self._track("is_chat_participant")
        return user_id in self.chat_rooms.get(chat_room_id, set())

    async def save_chat_message(
        self,
        chat_room_id: str,
        sender_id: int,
        content: str,
        message_type: str = "text",
    ) -> Dict[str, Any]:
        self._track("save_chat_message")
        message = {
            "id": len(self.messages) + 1,
            "chat_room_id": chat_room_id,
            "sender_id": sender_id,
            "content": content,
            "message_type": message_type,
            "status": "sent",
            "created_at": datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc),
        }
        self.messages.append(message)
        return message


@pytest.fixture
def repository():
    return FakeMarketplaceRepository()


@pytest.fixture
def api_service(repository):
    return ApiService(repository=repository)


@pytest.fixture
def make_token(api_service):
    """Build signed access tokens the way the auth endpoints issue them."""

    def _make(user_id: int, user_type: str = "customer", email: Optional[str] = None) -> str:
        claims = {"id": user_id, "email": email or f"user{user_id}@fixia.test", "user_type": user_type}
        return jwt.encode(claims, api_service.config.jwt_secret, algorithm=api_service.config.jwt_algorithm)

    return _make


@pytest.fixture
def auth_headers(make_token):
    def _headers(user_id: int, user_type: str = "customer") -> Dict[str, str]:
        return {"Authorization": f"Bearer {make_token(user_id, user_type)}"}

    return _headers
