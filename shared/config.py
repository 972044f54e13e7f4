"""
Shared configuration management for Fixia services.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="FIXIA_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = "local"
    log_level: str = "info"

    # Database
    postgres_dsn: str = "postgresql://localhost:5432/fixia"
    postgres_min_pool: int = 2
    postgres_max_pool: int = 10

    # Auth (tokens are issued elsewhere; we only verify them)
    jwt_secret: str = "fixia-dev-secret"
    jwt_algorithm: str = "HS256"

    # Response cache
    response_cache_ttl: int = 300
    dashboard_cache_ttl: int = 120
    categories_cache_ttl: int = 86400
    cache_check_period: int = 60

    # Chat socket
    max_ws_connections: int = 5000
    heartbeat_timeout: int = 90


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port)
