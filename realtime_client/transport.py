"""
Bidirectional event transports for the realtime chat client.

Frames on the wire are JSON objects ``{"event": str, "data": any, "ack": int | null}``.
The server answers frames that carry an ``ack`` id with
``{"event": "ack", "ack": <id>, "data": <result>}``.
"""

import asyncio
import inspect
import itertools
import json
from abc import ABC, abstractmethod
from collections import defaultdict
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from shared.errors import RealtimeError
from shared.logging import get_logger


CONNECT = "connect"
DISCONNECT = "disconnect"
CONNECT_ERROR = "connect_error"
ACK = "ack"


class DisconnectCause(str, Enum):
    """Why a live connection ended."""
    REMOTE_INITIATED = "remote_initiated"
    LOCAL_NETWORK_ERROR = "local_network_error"
    UNKNOWN = "unknown"
    CLIENT_REQUESTED = "client_requested"


EventHandler = Callable[..., Any]


class Transport(ABC):
    """One connection attempt and, if it succeeds, one live connection.

    Lifecycle events are dispatched to registered handlers: ``connect`` with
    no arguments, ``disconnect`` with a DisconnectCause and ``connect_error``
    with the exception. Server events are dispatched with their payload.
    """

    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)
        self.logger = get_logger("realtime.transport")

    def on(self, event: str, handler: EventHandler):
        self._handlers[event].append(handler)

    async def _dispatch(self, event: str, *args):
        for handler in list(self._handlers.get(event, ())):
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.logger.error("Event handler failed", event_name=event, error=str(e))

    @property
    @abstractmethod
    def connected(self) -> bool:
        ...

    @abstractmethod
    async def connect(self):
        """Open the connection; outcome is reported through lifecycle events."""

    @abstractmethod
    async def disconnect(self):
        """Close the connection at the caller's request."""

    @abstractmethod
    async def emit(self, event: str, data: Any = None):
        ...

    @abstractmethod
    async def emit_with_ack(self, event: str, data: Any = None, timeout: Optional[float] = None) -> Any:
        """Emit and wait for the server's acknowledgment payload.

        ``timeout`` bounds only the wait for the ack, never the send; it
        raises ``asyncio.TimeoutError`` when exceeded.
        """


class WebSocketTransport(Transport):
    """Transport over a ``websockets`` client connection."""

    def __init__(self, url: str, token: str, *, open_timeout: float = 10.0):
        super().__init__()
        self.url = url
        self.token = token
        self.open_timeout = open_timeout

        self._ws: Optional[ClientConnection] = None
        self._recv_task: Optional[asyncio.Task] = None
        self._pending_acks: Dict[int, asyncio.Future] = {}
        self._ack_ids = itertools.count(1)
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def connect(self):
        if self._ws is not None:
            return

        self._closing = False
        try:
            ws = await connect(
                self.url,
                additional_headers={"Authorization": f"Bearer {self.token}"},
                open_timeout=self.open_timeout,
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            self.logger.warning("Realtime connection failed", url=self.url, error=str(e))
            await self._dispatch(CONNECT_ERROR, e)
            return

        # disconnect() ran while the handshake was in flight
        if self._closing:
            await ws.close()
            self.logger.info("Realtime connection closed after handshake", url=self.url)
            return

        self._ws = ws
        self._recv_task = asyncio.create_task(self._recv_loop(self._ws))
        self.logger.info("Realtime connection opened", url=self.url)
        await self._dispatch(CONNECT)

    async def disconnect(self):
        self._closing = True
        ws = self._ws
        if ws is not None:
            await ws.close()

        task = self._recv_task
        if task is not None and task is not asyncio.current_task():
            await asyncio.gather(task, return_exceptions=True)

    async def emit(self, event: str, data: Any = None):
        await self._send({"event": event, "data": data, "ack": None})

    async def emit_with_ack(self, event: str, data: Any = None, timeout: Optional[float] = None) -> Any:
        ack_id = next(self._ack_ids)
        future = asyncio.get_running_loop().create_future()
        self._pending_acks[ack_id] = future
        try:
            await self._send({"event": event, "data": data, "ack": ack_id})
            return await asyncio.wait_for(future, timeout)
        finally:
            self._pending_acks.pop(ack_id, None)

    async def _send(self, frame: Dict[str, Any]):
        ws = self._ws
        if ws is None:
            raise RealtimeError("Not connected")
        try:
            await ws.send(json.dumps(frame))
        except ConnectionClosed as e:
            raise RealtimeError("Connection closed while sending", {"event": frame["event"]}) from e

    async def _recv_loop(self, ws: ClientConnection):
        try:
            while True:
                raw = await ws.recv()
                await self._handle_frame(raw)
        except ConnectionClosed as e:
            cause = self._classify_close(e)
        finally:
            self._ws = None
            self._fail_pending_acks()

        self.logger.info("Realtime connection closed", cause=cause.value)
        await self._dispatch(DISCONNECT, cause)

    def _classify_close(self, exc: ConnectionClosed) -> DisconnectCause:
        if self._closing:
            return DisconnectCause.CLIENT_REQUESTED
        if exc.rcvd is None:
            return DisconnectCause.LOCAL_NETWORK_ERROR
        if exc.rcvd_then_sent:
            return DisconnectCause.REMOTE_INITIATED
        return DisconnectCause.UNKNOWN

    async def _handle_frame(self, raw: Any):
        try:
            frame = json.loads(raw)
        except (TypeError, ValueError) as e:
            self.logger.warning("Dropping malformed frame", error=str(e))
            return
        if not isinstance(frame, dict) or "event" not in frame:
            self.logger.warning("Dropping frame without event")
            return

        if frame["event"] == ACK:
            future = self._pending_acks.get(frame.get("ack"))
            if future is not None and not future.done():
                future.set_result(frame.get("data"))
            return

        await self._dispatch(frame["event"], frame.get("data"))

    def _fail_pending_acks(self):
        for future in self._pending_acks.values():
            if not future.done():
                future.set_exception(RealtimeError("Connection closed before acknowledgment"))
        self._pending_acks.clear()
