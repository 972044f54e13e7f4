"""
Marketplace API service for Fixia.
"""

from typing import Any, Dict, Optional

from fastapi import Depends, Query, Request, WebSocket, WebSocketDisconnect

from shared.base_service import BaseService
from shared.errors import AuthenticationError, NotFoundError, RealtimeError, ValidationError
from .auth import AuthContext, TokenAuthenticator, extract_bearer_token
from .caching import ResponseCache, ResponseCacheMiddleware
from .models import ASStats, ExplorerStats, ServiceCreate, ServiceUpdate, UserRole
from .persistence import MarketplaceRepository, PostgresMarketplaceRepository
from .ws import ChatConnectionManager, ChatMessageHandler


CATEGORIES_CACHE_KEY = "categories:all"
POLICY_VIOLATION = 1008
TRY_AGAIN_LATER = 1013


def vary_by_user(request: Request) -> Optional[str]:
    """Key suffix separating per-user responses."""
    user_info = getattr(request.state, "user_info", None)
    if not user_info:
        return None
    return f"user:{user_info['user_id']}"


def _explorer_stats(row: Dict[str, Any]) -> ExplorerStats:
    return ExplorerStats(
        activeBookings=row.get("active_bookings") or 0,
        completedBookings=row.get("completed_bookings") or 0,
        totalSpent=float(row.get("total_spent") or 0),
        favoriteServices=row.get("favorite_services") or 0,
        unreadMessages=row.get("unread_messages") or 0,
    )


def _as_stats(row: Dict[str, Any]) -> ASStats:
    return ASStats(
        totalServices=row.get("total_services") or 0,
        activeServices=row.get("active_services") or 0,
        pendingRequests=row.get("pending_requests") or 0,
        completedBookings=row.get("completed_bookings") or 0,
        totalEarnings=float(row.get("total_earnings") or 0),
        averageRating=round(float(row.get("average_rating") or 0), 1),
        totalReviews=row.get("total_reviews") or 0,
        profileCompletion=row.get("profile_completion") or 0,
    )


class ApiService(BaseService):
    """Marketplace API service implementation."""

    def __init__(self, repository: Optional[MarketplaceRepository] = None):
        super().__init__("api", 8000)

        self.repository = repository or PostgresMarketplaceRepository(
            self.config.postgres_dsn,
            min_size=self.config.postgres_min_pool,
            max_size=self.config.postgres_max_pool,
        )
        self.cache = ResponseCache(
            default_ttl=self.config.response_cache_ttl,
            check_period=self.config.cache_check_period,
            metrics=self.metrics,
        )
        self.response_cache = ResponseCacheMiddleware(self.cache)
        self.authenticator = TokenAuthenticator(self.config.jwt_secret, self.config.jwt_algorithm)

        self.chat_manager = ChatConnectionManager(
            max_connections=self.config.max_ws_connections,
            heartbeat_timeout=self.config.heartbeat_timeout,
            metrics=self.metrics,
        )
        self.chat_handler = ChatMessageHandler(self.chat_manager, self.repository, metrics=self.metrics)

        @self.app.on_event("startup")
        async def _startup():
            await self.start()

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.stop()

        self._setup_dashboard_routes()
        self._setup_service_routes()
        self._setup_cache_admin_routes()
        self._setup_chat_routes()

        self.app.state.api_service = self

    def _setup_dashboard_routes(self):
        """Dashboard statistics, cached per user."""
        dashboard_ttl = self.config.dashboard_cache_ttl
        any_user = self.authenticator.require()
        agent = self.authenticator.require(UserRole.AS)

        @self.app.get("/api/dashboard/explorer-stats")
        @self.response_cache.cached(ttl=dashboard_ttl, vary_by=vary_by_user)
        async def explorer_stats(request: Request, auth: AuthContext = Depends(any_user)):
            row = await self.repository.get_explorer_stats(auth.user_id)
            recent = await self.repository.get_explorer_recent_bookings(auth.user_id)
            return {
                "success": True,
                "message": "Estadísticas de Explorer obtenidas exitosamente",
                "data": {
                    "stats": _explorer_stats(row).model_dump(),
                    "recentBookings": recent,
                },
            }

        @self.app.get("/api/dashboard/as-stats")
        @self.response_cache.cached(ttl=dashboard_ttl, vary_by=vary_by_user)
        async def as_stats(request: Request, auth: AuthContext = Depends(agent)):
            row = await self.repository.get_as_stats(auth.user_id)
            recent = await self.repository.get_as_recent_bookings(auth.user_id)
            return {
                "success": True,
                "message": "Estadísticas de AS obtenidas exitosamente",
                "data": {
                    "stats": _as_stats(row).model_dump(),
                    "recentBookings": recent,
                },
            }

    def _setup_service_routes(self):
        """Service catalogue. Writes invalidate the cached listings."""
        listing_ttl = self.config.response_cache_ttl
        agent = self.authenticator.require(UserRole.AS)

        @self.app.get("/api/services")
        @self.response_cache.cached(ttl=listing_ttl)
        async def list_services(
            request: Request,
            page: int = Query(1, ge=1),
            limit: int = Query(20, ge=1, le=100),
            category: Optional[int] = Query(None),
        ):
            result = await self.repository.list_services(page, limit, category)
            total = result["total"]
            return {
                "success": True,
                "data": result["services"],
                "pagination": {
                    "page": page,
                    "limit": limit,
                    "total": total,
                    "pages": (total + limit - 1) // limit,
                },
            }

        @self.app.get("/api/services/{service_id}")
        @self.response_cache.cached(ttl=listing_ttl)
        async def get_service(request: Request, service_id: int):
            service = await self.repository.get_service(service_id)
            if service is None:
                raise NotFoundError("Service", service_id)
            return {"success": True, "data": service}

        @self.app.post("/api/services", status_code=201)
        async def create_service(body: ServiceCreate, auth: AuthContext = Depends(agent)):
            await self._validate_category(body.category_id)
            service = await self.repository.create_service(auth.user_id, body.model_dump())
            self._invalidate_catalogue()
            return {"success": True, "message": "Servicio creado exitosamente", "data": service}

        @self.app.put("/api/services/{service_id}")
        async def update_service(service_id: int, body: ServiceUpdate, auth: AuthContext = Depends(agent)):
            changes = body.model_dump(exclude_unset=True)
            if changes.get("category_id") is not None:
                await self._validate_category(changes["category_id"])

            service = await self.repository.update_service(service_id, auth.user_id, changes)
            if service is None:
                raise NotFoundError("Service", service_id)
            self._invalidate_catalogue()
            return {"success": True, "message": "Servicio actualizado exitosamente", "data": service}

        @self.app.delete("/api/services/{service_id}")
        async def delete_service(service_id: int, auth: AuthContext = Depends(agent)):
            if not await self.repository.delete_service(service_id, auth.user_id):
                raise NotFoundError("Service", service_id)
            self._invalidate_catalogue()
            return {"success": True, "message": "Servicio eliminado exitosamente"}

        @self.app.get("/api/categories")
        @self.response_cache.cached(ttl=listing_ttl)
        async def list_categories(request: Request):
            categories = await self.repository.list_categories()
            return {"success": True, "data": categories}

    def _setup_cache_admin_routes(self):
        """Cache inspection and manual invalidation for administrators."""
        admin = self.authenticator.require(UserRole.ADMIN)

        @self.app.get("/api/cache/stats")
        async def cache_stats(auth: AuthContext = Depends(admin)):
            return {
                "success": True,
                "data": {
                    "cache": self.cache.stats(),
                    "chat": self.chat_manager.get_connection_stats(),
                },
            }

        @self.app.delete("/api/cache")
        async def clear_cache(pattern: Optional[str] = Query(None), auth: AuthContext = Depends(admin)):
            if pattern:
                removed = self.cache.invalidate_by_pattern(pattern)
                message = f"Cache invalidated for pattern: {pattern}"
            else:
                removed = self.cache.invalidate_all()
                message = "Cache cleared"

            self.logger.info("Cache cleared by admin", pattern=pattern, removed=removed, user_id=auth.user_id)
            return {"success": True, "message": message, "data": {"removed": removed}}

    def _setup_chat_routes(self):
        """Realtime chat socket."""

        @self.app.websocket("/ws/chat")
        async def chat_socket(websocket: WebSocket):
            token = extract_bearer_token(websocket.headers.get("authorization")) or websocket.query_params.get("token")
            try:
                if not token:
                    raise AuthenticationError("Chat token required")
                context = self.authenticator.decode(token)
            except AuthenticationError as e:
                self.logger.info("Chat socket rejected", reason=e.message)
                await websocket.close(code=POLICY_VIOLATION)
                return

            await websocket.accept()
            try:
                connection_id = await self.chat_manager.add_connection(websocket, context.user_id)
            except RealtimeError as e:
                self.logger.warning("Chat socket refused", reason=e.message, user_id=context.user_id)
                await websocket.close(code=TRY_AGAIN_LATER)
                return

            try:
                while True:
                    message_text = await websocket.receive_text()
                    reply = await self.chat_handler.handle_message(connection_id, message_text)
                    if reply is not None:
                        await self.chat_manager.send_event(connection_id, reply)
            except WebSocketDisconnect:
                self.logger.info("Chat socket disconnected", connection_id=connection_id)
            finally:
                await self.chat_manager.remove_connection(connection_id)

    async def _validate_category(self, category_id: int):
        categories = await self.cache.get_or_set(
            CATEGORIES_CACHE_KEY,
            self.repository.list_categories,
            self.config.categories_cache_ttl,
        )
        if not any(category.get("id") == category_id for category in categories):
            raise ValidationError("Unknown category", {"category_id": category_id})

    def _invalidate_catalogue(self) -> int:
        return self.response_cache.invalidate("/api/services", "/api/dashboard")

    async def _check_dependencies(self) -> Dict[str, str]:
        return {
            "postgres": await self.repository.check(),
            "response_cache": "ok" if self.cache.running else "stopped",
        }

    async def start(self):
        """Start API service components."""
        await self.repository.start()
        await self.cache.start()
        await self.chat_manager.start()
        self.logger.info("API service components started")

    async def stop(self):
        """Stop API service components."""
        await self.chat_manager.stop()
        await self.cache.stop()
        await self.repository.stop()
        self.logger.info("API service components stopped")


def create_app():
    """Create API service application."""
    service = ApiService()
    return service.app


if __name__ == "__main__":
    service = ApiService()
    service.run()
