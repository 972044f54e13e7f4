"""
PostgreSQL persistence layer for the API service.
"""

from typing import Dict, Any, Optional, List

import asyncpg

from shared.errors import ExternalServiceError
from shared.logging import get_logger
from shared.retry import RetryConfig, RetryError, retry_on_exception
from .repository import MarketplaceRepository


POOL_RETRY = RetryConfig(max_attempts=5, base_delay=1.0, max_delay=10.0)

SERVICE_COLUMNS = """
    s.id, s.provider_id, s.category_id, s.title, s.description, s.price,
    s.duration_minutes, s.location, s.is_active, s.created_at, s.updated_at,
    c.name AS category_name,
    COALESCE(u.first_name, '') AS provider_first_name,
    COALESCE(u.last_name, '') AS provider_last_name
"""

UPDATABLE_SERVICE_FIELDS = (
    "title", "description", "category_id", "price", "duration_minutes", "location", "is_active",
)


class PostgresMarketplaceRepository(MarketplaceRepository):
    """asyncpg-backed repository. Query failures raise ExternalServiceError."""

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.logger = get_logger("api.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Open the connection pool, retrying while the database comes up."""
        try:
            self.pool = await self._create_pool()
        except RetryError as e:
            self.logger.error("Failed to start PostgreSQL persistence", error=str(e.last_exception))
            raise ExternalServiceError("postgres", str(e.last_exception))
        self.logger.info("PostgreSQL persistence started")

    @retry_on_exception((OSError, asyncpg.PostgresError), POOL_RETRY)
    async def _create_pool(self) -> asyncpg.Pool:
        return await asyncpg.create_pool(
            self.dsn,
            min_size=self.min_size,
            max_size=self.max_size,
            command_timeout=30
        )

    async def stop(self):
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL persistence stopped")

    async def check(self) -> str:
        try:
            await self._fetchval("SELECT 1")
            return "ok"
        except ExternalServiceError as e:
            return e.message

    async def _fetch(self, query: str, *args) -> List[Dict[str, Any]]:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                rows = await conn.fetch(query, *args)
        except (asyncpg.PostgresError, OSError) as e:
            self.logger.error("Query failed", error=str(e))
            raise ExternalServiceError("postgres", str(e)) from e
        return [dict(row) for row in rows]

    async def _fetchrow(self, query: str, *args) -> Optional[Dict[str, Any]]:
        rows = await self._fetch(query, *args)
        return rows[0] if rows else None

    async def _fetchval(self, query: str, *args) -> Any:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                return await conn.fetchval(query, *args)
        except (asyncpg.PostgresError, OSError) as e:
            self.logger.error("Query failed", error=str(e))
            raise ExternalServiceError("postgres", str(e)) from e

    def _require_pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise ExternalServiceError("postgres", "connection pool not started")
        return self.pool

    async def get_explorer_stats(self, user_id: int) -> Dict[str, Any]:
        row = await self._fetchrow("""
            SELECT
                COUNT(DISTINCT b.id) FILTER (WHERE b.status IN ('pending', 'confirmed', 'in_progress')) AS active_bookings,
                COUNT(DISTINCT b.id) FILTER (WHERE b.status = 'completed') AS completed_bookings,
                COALESCE(SUM(b.total_amount) FILTER (WHERE b.status = 'completed'), 0) AS total_spent,
                (SELECT COUNT(*) FROM favorites f WHERE f.user_id = u.id) AS favorite_services,
                (SELECT COUNT(*) FROM chat_messages m
                    JOIN chat_rooms r ON r.id = m.chat_room_id
                    WHERE (r.client_id = u.id OR r.provider_id = u.id)
                      AND m.sender_id <> u.id AND m.status <> 'read') AS unread_messages
            FROM users u
            LEFT JOIN bookings b ON u.id = b.client_id
            WHERE u.id = $1
            GROUP BY u.id
        """, user_id)
        return row or {}

    async def get_explorer_recent_bookings(self, user_id: int, limit: int = 5) -> List[Dict[str, Any]]:
        return await self._fetch("""
            SELECT
                b.id,
                b.status,
                b.booking_date AS scheduled_date,
                b.booking_time AS scheduled_time,
                b.total_amount,
                COALESCE(s.title, 'Servicio') AS service_title,
                COALESCE(u.first_name, 'Proveedor') AS provider_name,
                COALESCE(u.last_name, '') AS provider_last_name
            FROM bookings b
            LEFT JOIN services s ON b.service_id = s.id
            LEFT JOIN users u ON b.provider_id = u.id
            WHERE b.client_id = $1
            ORDER BY b.created_at DESC
            LIMIT $2
        """, user_id, limit)

    async def get_as_stats(self, user_id: int) -> Dict[str, Any]:
        row = await self._fetchrow("""
            SELECT
                COUNT(DISTINCT s.id) AS total_services,
                COUNT(DISTINCT s.id) FILTER (WHERE s.is_active = true) AS active_services,
                COUNT(DISTINCT b.id) FILTER (WHERE b.status = 'pending') AS pending_requests,
                COUNT(DISTINCT b.id) FILTER (WHERE b.status = 'completed') AS completed_bookings,
                COALESCE(SUM(b.total_amount) FILTER (WHERE b.status = 'completed'), 0) AS total_earnings,
                COALESCE(AVG(r.rating), 0) AS average_rating,
                COUNT(DISTINCT r.id) AS total_reviews,
                LEAST(100,
                    (CASE WHEN u.profile_photo_url IS NOT NULL THEN 20 ELSE 0 END) +
                    (CASE WHEN u.about_me IS NOT NULL THEN 20 ELSE 0 END) +
                    (CASE WHEN u.phone IS NOT NULL THEN 20 ELSE 0 END) +
                    (CASE WHEN u.address IS NOT NULL THEN 20 ELSE 0 END) +
                    (CASE WHEN COUNT(DISTINCT s.id) >= 3 THEN 20 ELSE 0 END)
                ) AS profile_completion
            FROM users u
            LEFT JOIN services s ON u.id = s.provider_id
            LEFT JOIN bookings b ON u.id = b.provider_id
            LEFT JOIN reviews r ON u.id = r.provider_id
            WHERE u.id = $1
            GROUP BY u.id, u.profile_photo_url, u.about_me, u.phone, u.address
        """, user_id)
        return row or {}

    async def get_as_recent_bookings(self, user_id: int, limit: int = 5) -> List[Dict[str, Any]]:
        return await self._fetch("""
            SELECT
                b.id,
                b.status,
                b.booking_date AS scheduled_date,
                b.booking_time AS scheduled_time,
                b.total_amount,
                COALESCE(s.title, 'Servicio') AS service_title,
                COALESCE(u.first_name, 'Cliente') AS client_name,
                COALESCE(u.last_name, '') AS client_last_name
            FROM bookings b
            LEFT JOIN services s ON b.service_id = s.id
            LEFT JOIN users u ON b.client_id = u.id
            WHERE b.provider_id = $1
            ORDER BY b.created_at DESC
            LIMIT $2
        """, user_id, limit)

    async def list_services(self, page: int, limit: int, category_id: Optional[int] = None) -> Dict[str, Any]:
        offset = (page - 1) * limit
        services = await self._fetch(f"""
            SELECT {SERVICE_COLUMNS}
            FROM services s
            LEFT JOIN categories c ON s.category_id = c.id
            LEFT JOIN users u ON s.provider_id = u.id
            WHERE s.is_active = true AND ($1::int IS NULL OR s.category_id = $1)
            ORDER BY s.created_at DESC
            LIMIT $2 OFFSET $3
        """, category_id, limit, offset)
        total = await self._fetchval("""
            SELECT COUNT(*) FROM services s
            WHERE s.is_active = true AND ($1::int IS NULL OR s.category_id = $1)
        """, category_id)
        return {"services": services, "total": total or 0}

    async def get_service(self, service_id: int) -> Optional[Dict[str, Any]]:
        return await self._fetchrow(f"""
            SELECT {SERVICE_COLUMNS}
            FROM services s
            LEFT JOIN categories c ON s.category_id = c.id
            LEFT JOIN users u ON s.provider_id = u.id
            WHERE s.id = $1
        """, service_id)

    async def create_service(self, provider_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
        row = await self._fetchrow("""
            INSERT INTO services (provider_id, category_id, title, description, price, duration_minutes, location)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            RETURNING id
        """, provider_id, data["category_id"], data["title"], data["description"],
            data["price"], data.get("duration_minutes", 60), data.get("location"))
        self.logger.info("Service created", service_id=row["id"], provider_id=provider_id)
        return await self.get_service(row["id"])

    async def update_service(self, service_id: int, provider_id: int, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        fields = [name for name in UPDATABLE_SERVICE_FIELDS if name in data]
        if not fields:
            existing = await self.get_service(service_id)
            if existing is None or existing["provider_id"] != provider_id:
                return None
            return existing

        assignments = ", ".join(f"{name} = ${index + 3}" for index, name in enumerate(fields))
        row = await self._fetchrow(f"""
            UPDATE services SET {assignments}, updated_at = NOW()
            WHERE id = $1 AND provider_id = $2
            RETURNING id
        """, service_id, provider_id, *[data[name] for name in fields])
        if row is None:
            return None
        self.logger.info("Service updated", service_id=service_id, fields=fields)
        return await self.get_service(service_id)

    async def delete_service(self, service_id: int, provider_id: int) -> bool:
        row = await self._fetchrow("""
            DELETE FROM services WHERE id = $1 AND provider_id = $2 RETURNING id
        """, service_id, provider_id)
        if row is None:
            self.logger.warning("Service not found for deletion", service_id=service_id)
            return False
        self.logger.info("Service deleted", service_id=service_id)
        return True

    async def list_categories(self) -> List[Dict[str, Any]]:
        return await self._fetch("""
            SELECT c.id, c.name, c.description, c.icon,
                   COUNT(s.id) FILTER (WHERE s.is_active = true) AS services_count
            FROM categories c
            LEFT JOIN services s ON s.category_id = c.id
            GROUP BY c.id
            ORDER BY c.name
        """)

    async def is_chat_participant(self, chat_room_id: str, user_id: int) -> bool:
        value = await self._fetchval("""
            SELECT EXISTS (
                SELECT 1 FROM chat_rooms
                WHERE id::text = $1 AND (client_id = $2 OR provider_id = $2)
            )
        """, chat_room_id, user_id)
        return bool(value)

    async def save_chat_message(
        self,
        chat_room_id: str,
        sender_id: int,
        content: str,
        message_type: str = "text",
    ) -> Dict[str, Any]:
        row = await self._fetchrow("""
            INSERT INTO chat_messages (chat_room_id, sender_id, content, message_type, status)
            SELECT r.id, $2, $3, $4, 'sent' FROM chat_rooms r WHERE r.id::text = $1
            RETURNING id, chat_room_id::text AS chat_room_id, sender_id, content, message_type, status, created_at
        """, chat_room_id, sender_id, content, message_type)
        if row is None:
            raise ExternalServiceError("postgres", f"chat room {chat_room_id} does not exist")
        return row
