"""
Configuration for the realtime chat client.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RealtimeSettings(BaseSettings):
    """Connection, heartbeat and reconnection policy for a realtime session."""

    model_config = SettingsConfigDict(
        env_prefix="FIXIA_REALTIME_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    url: str = "ws://localhost:8000/ws/chat"
    open_timeout: float = Field(default=10.0, gt=0)

    # Heartbeat
    heartbeat_interval: float = Field(default=30.0, gt=0)
    latency_history_size: int = Field(default=20, ge=1)

    # Acknowledged sends
    ack_timeout: float = Field(default=5.0, gt=0)

    # Reconnection
    remote_reconnect_delay: float = Field(default=5.0, ge=0)
    local_reconnect_delay: float = Field(default=1.0, ge=0)
    max_reconnect_delay: float = Field(default=30.0, ge=0)
    max_reconnect_attempts: Optional[int] = Field(default=10, ge=1)
    jitter_factor: float = Field(default=0.5, ge=0, le=1)
