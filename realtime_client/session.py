"""
Realtime session manager for the Fixia chat channel.

One session owns at most one live transport. It reconnects with a delay that
depends on why the previous connection ended, replays chat subscriptions
after every successful connect, measures heartbeat latency, and turns pushed
chat events into query cache invalidations.
"""

import asyncio
import functools
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Set

from shared.errors import RealtimeError
from shared.logging import get_logger
from shared.retry import RetryConfig, calculate_delay
from .config import RealtimeSettings
from .quality import ConnectionQuality, LatencyTracker
from .query_cache import QueryCache, chat_list_key, chat_messages_key
from .transport import (
    CONNECT,
    CONNECT_ERROR,
    DISCONNECT,
    DisconnectCause,
    Transport,
    WebSocketTransport,
)


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass(frozen=True)
class SessionSnapshot:
    """What listeners see after every state or quality change."""
    state: SessionState
    quality: ConnectionQuality
    latency_ms: Optional[float]
    reconnect_attempts: int
    active_chats: FrozenSet[str]


TransportFactory = Callable[[str, str], Transport]
SessionListener = Callable[[SessionSnapshot], None]


class RealtimeSessionManager:
    """Owns the realtime connection of one authenticated user."""

    def __init__(
        self,
        transport_factory: Optional[TransportFactory] = None,
        query_cache: Optional[QueryCache] = None,
        settings: Optional[RealtimeSettings] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or RealtimeSettings()
        self.transport_factory = transport_factory or self._websocket_transport
        self.query_cache = query_cache if query_cache is not None else QueryCache()
        self.logger = get_logger("realtime.session")
        self._clock = clock

        self.retry_config = RetryConfig(
            max_attempts=self.settings.max_reconnect_attempts,
            base_delay=self.settings.local_reconnect_delay,
            max_delay=self.settings.max_reconnect_delay,
            jitter_factor=self.settings.jitter_factor,
        )

        self.state = SessionState.DISCONNECTED
        self.quality = ConnectionQuality.DISCONNECTED
        self.latency = LatencyTracker(self.settings.latency_history_size)
        self.active_chats: Set[str] = set()
        self.user_id: Optional[Any] = None
        self._token: Optional[str] = None

        self._transport: Optional[Transport] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._reconnect_attempts = 0
        self._last_ping_at: Optional[float] = None
        self.last_reconnect_delay: Optional[float] = None

        self.messages_count = 0
        self.reconnect_count = 0
        self.last_activity: Optional[datetime] = None
        self._connection_start: Optional[float] = None

        self._listeners: List[SessionListener] = []

    def _websocket_transport(self, url: str, token: str) -> Transport:
        return WebSocketTransport(url, token, open_timeout=self.settings.open_timeout)

    @property
    def connected(self) -> bool:
        return (
            self.state == SessionState.CONNECTED
            and self._transport is not None
            and self._transport.connected
        )

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    async def start(self, user_id: Any, token: str):
        """Connect as ``user_id``, replacing any previous connection."""
        if user_id is None or not token:
            raise ValueError("A user and an access token are required to connect")

        self.user_id = user_id
        self._token = token
        self._reconnect_attempts = 0
        self._cancel_reconnect()
        await self._open()

    async def reconnect(self):
        """Manual reconnection; also the way out of the failed state."""
        if self.state == SessionState.CLOSED or self._token is None:
            self.logger.warning("Reconnect ignored, session has no credentials", state=self.state.value)
            return

        self.logger.info("Manual reconnection initiated")
        self._reconnect_attempts = 0
        self._cancel_reconnect()
        await self._open()

    async def disconnect(self):
        """User-initiated disconnect; no automatic reconnection follows."""
        self._cancel_reconnect()
        await self._retire_transport()
        self._update(state=SessionState.DISCONNECTED, quality=ConnectionQuality.DISCONNECTED)

    async def close(self):
        """Tear the session down for logout."""
        self._cancel_reconnect()
        await self._retire_transport()
        self.active_chats.clear()
        self.user_id = None
        self._token = None
        self._update(state=SessionState.CLOSED, quality=ConnectionQuality.DISCONNECTED)
        self.logger.info("Realtime session closed")

    async def join(self, chat_id: Any) -> bool:
        """Subscribe to a chat. Returns False when already subscribed."""
        chat_id = str(chat_id)
        if chat_id in self.active_chats:
            return False

        self.active_chats.add(chat_id)
        if self.connected:
            await self._emit("join_chat", chat_id)
            self.logger.info("Joined chat", chat_id=chat_id)
        return True

    async def leave(self, chat_id: Any) -> bool:
        """Unsubscribe from a chat. Returns False when not subscribed."""
        chat_id = str(chat_id)
        if chat_id not in self.active_chats:
            return False

        self.active_chats.discard(chat_id)
        if self.connected:
            await self._emit("leave_chat", chat_id)
            self.logger.info("Left chat", chat_id=chat_id)
        return True

    async def send_message(self, chat_id: Any, content: str, message_type: str = "text") -> bool:
        """Send a chat message and wait for the server's acknowledgment.

        Returns True only for an acknowledgment reporting success. A missing
        connection, a timeout or a transport failure all yield False.
        """
        transport = self._transport
        if not self.connected or transport is None:
            self.logger.warning("Cannot send message, not connected", chat_id=chat_id)
            return False

        payload = {
            "chat_room_id": str(chat_id),
            "content": content,
            "message_type": message_type,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        try:
            ack = await transport.emit_with_ack("send_message", payload, timeout=self.settings.ack_timeout)
        except asyncio.TimeoutError:
            self.logger.warning("Message acknowledgment timed out", chat_id=chat_id, timeout=self.settings.ack_timeout)
            return False
        except RealtimeError as e:
            self.logger.warning("Message send failed", chat_id=chat_id, error=e.message)
            return False
        except Exception as e:
            self.logger.error("Unexpected message send failure", chat_id=chat_id, error=str(e))
            return False

        if isinstance(ack, dict) and ack.get("success"):
            self.messages_count += 1
            self._touch()
            return True

        error = ack.get("error") if isinstance(ack, dict) else None
        self.logger.warning("Message rejected by server", chat_id=chat_id, error=error)
        return False

    async def ping(self) -> bool:
        """Emit one heartbeat ping and remember when it was sent."""
        transport = self._transport
        if not self.connected or transport is None:
            return False

        self._last_ping_at = self._clock()
        return await self._emit("ping")

    def get_latency(self) -> float:
        return self.latency.latest or 0.0

    def get_connection_stats(self) -> Dict[str, Any]:
        uptime = 0.0
        if self.connected and self._connection_start is not None:
            uptime = self._clock() - self._connection_start
        return {
            "uptime": uptime,
            "messages_count": self.messages_count,
            "reconnect_count": self.reconnect_count,
            "average_latency": self.latency.average,
        }

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            state=self.state,
            quality=self.quality,
            latency_ms=self.latency.latest,
            reconnect_attempts=self._reconnect_attempts,
            active_chats=frozenset(self.active_chats),
        )

    def add_listener(self, listener: SessionListener) -> Callable[[], None]:
        """Register ``listener``; returns a callable that unregisters it."""
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def _open(self):
        await self._retire_transport()

        transport = self.transport_factory(self.settings.url, self._token)
        transport.on(CONNECT, functools.partial(self._on_connect, transport))
        transport.on(DISCONNECT, functools.partial(self._on_disconnect, transport))
        transport.on(CONNECT_ERROR, functools.partial(self._on_connect_error, transport))
        transport.on("pong", functools.partial(self._on_pong, transport))
        transport.on("new_chat_message", functools.partial(self._on_new_chat_message, transport))
        transport.on("message_status_update", functools.partial(self._on_message_status_update, transport))
        self._transport = transport

        self._update(state=SessionState.CONNECTING)
        self.logger.info("Connecting realtime session", user_id=self.user_id, attempt=self._reconnect_attempts)
        await transport.connect()

    async def _retire_transport(self):
        transport, self._transport = self._transport, None
        self._stop_heartbeat()
        if transport is None:
            return
        try:
            await transport.disconnect()
        except Exception as e:
            self.logger.warning("Error closing previous transport", error=str(e))

    async def _on_connect(self, transport: Transport):
        if transport is not self._transport:
            return

        self._reconnect_attempts = 0
        self._connection_start = self._clock()
        self._update(state=SessionState.CONNECTED, quality=ConnectionQuality.EXCELLENT)
        self.logger.info("Realtime session connected", user_id=self.user_id, chats=len(self.active_chats))

        for chat_id in sorted(self.active_chats):
            await self._emit("join_chat", chat_id)

        self._start_heartbeat()

    async def _on_disconnect(self, transport: Transport, cause: DisconnectCause):
        if transport is not self._transport:
            return

        self._stop_heartbeat()
        self.logger.info("Realtime session disconnected", cause=cause.value)

        if cause == DisconnectCause.CLIENT_REQUESTED:
            self._update(state=SessionState.DISCONNECTED, quality=ConnectionQuality.DISCONNECTED)
            return

        self._update(quality=ConnectionQuality.DISCONNECTED)
        self._schedule_reconnect(cause)

    async def _on_connect_error(self, transport: Transport, exc: Exception):
        if transport is not self._transport:
            return

        self.logger.warning("Realtime connection error", error=str(exc))
        self._update(quality=ConnectionQuality.POOR)
        self._schedule_reconnect(DisconnectCause.LOCAL_NETWORK_ERROR)

    def _schedule_reconnect(self, cause: DisconnectCause) -> Optional[float]:
        """Schedule the single pending reconnect; None when giving up."""
        if self.state == SessionState.CLOSED:
            return None

        max_attempts = self.settings.max_reconnect_attempts
        if max_attempts is not None and self._reconnect_attempts >= max_attempts:
            self._cancel_reconnect()
            self._update(state=SessionState.FAILED)
            self.logger.error("Reconnection attempts exhausted", attempts=self._reconnect_attempts)
            return None

        self._reconnect_attempts += 1
        self.reconnect_count += 1

        if cause == DisconnectCause.REMOTE_INITIATED:
            base_delay = self.settings.remote_reconnect_delay
        else:
            base_delay = self.settings.local_reconnect_delay
        delay = calculate_delay(self._reconnect_attempts, self.retry_config, base_delay=base_delay)
        self.last_reconnect_delay = delay

        self._cancel_reconnect()
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))
        self._update(state=SessionState.RECONNECTING)

        self.logger.info(
            "Reconnect scheduled",
            cause=cause.value,
            attempt=self._reconnect_attempts,
            delay=round(delay, 3)
        )
        return delay

    async def _reconnect_after(self, delay: float):
        await asyncio.sleep(delay)
        # stays registered while connecting so close() can still cancel it
        await self._open()
        if self._reconnect_task is asyncio.current_task():
            self._reconnect_task = None

    def _cancel_reconnect(self):
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    def _start_heartbeat(self):
        self._stop_heartbeat()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    def _stop_heartbeat(self):
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _heartbeat_loop(self):
        while True:
            await asyncio.sleep(self.settings.heartbeat_interval)
            await self.ping()

    async def _on_pong(self, transport: Transport, data: Any = None):
        if transport is not self._transport or self._last_ping_at is None:
            return

        latency_ms = round((self._clock() - self._last_ping_at) * 1000)
        quality = self.latency.record(latency_ms)
        self._update(quality=quality)

    async def _on_new_chat_message(self, transport: Transport, data: Any = None):
        if transport is not self._transport:
            return

        self.messages_count += 1
        self._touch()

        chat_id = data.get("chat_room_id") if isinstance(data, dict) else None
        if chat_id is not None:
            self.query_cache.invalidate(chat_messages_key(chat_id))
        self.query_cache.invalidate(chat_list_key(self.user_id))

    async def _on_message_status_update(self, transport: Transport, data: Any = None):
        if transport is not self._transport or not isinstance(data, dict):
            return

        self._touch()
        chat_id = data.get("chat_room_id")
        if chat_id is None:
            return

        message_id = data.get("message_id")
        status = data.get("status")

        def patch(old):
            if not old or not isinstance(old, dict) or old.get("messages") is None:
                return None
            return {
                **old,
                "messages": [
                    {**message, "status": status} if message.get("id") == message_id else message
                    for message in old["messages"]
                ],
            }

        self.query_cache.set_query_data(chat_messages_key(chat_id), patch)

    async def _emit(self, event: str, data: Any = None) -> bool:
        transport = self._transport
        if transport is None:
            return False
        try:
            await transport.emit(event, data)
            return True
        except RealtimeError as e:
            self.logger.warning("Emit failed", event_name=event, error=e.message)
            return False

    def _touch(self):
        self.last_activity = datetime.now(timezone.utc)

    def _update(self, state: Optional[SessionState] = None, quality: Optional[ConnectionQuality] = None):
        changed = False
        if state is not None and state != self.state:
            self.state = state
            changed = True
        if quality is not None and quality != self.quality:
            self.quality = quality
            changed = True
        if not changed:
            return

        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                self.logger.error("Session listener failed", error=str(e))
