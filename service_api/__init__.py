"""
Fixia marketplace API service package.

Serves the dashboard, services and categories endpoints behind a TTL
response cache, and hosts the chat socket used by the realtime client.

Structure:
- app.main: FastAPI app, routes and lifecycle wiring.
- app.caching: Response cache store and the GET caching decorator.
- app.auth: Bearer token verification dependencies.
- app.persistence: PostgreSQL repository.
- app.ws: Chat socket connection manager and event handlers.
"""
