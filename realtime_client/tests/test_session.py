"""
Unit tests for the realtime session manager.
"""

import asyncio
import time

import pytest
from websockets.asyncio.server import serve

from realtime_client import (
    ConnectionQuality,
    DisconnectCause,
    QueryCache,
    RealtimeSessionManager,
    RealtimeSettings,
    SessionState,
    Transport,
    chat_list_key,
    chat_messages_key,
)
from realtime_client.transport import CONNECT, CONNECT_ERROR, DISCONNECT
from shared.errors import RealtimeError


class FakeTransport(Transport):
    """Scriptable in-memory transport."""

    def __init__(self, url: str, token: str, fail: bool = False):
        super().__init__()
        self.url = url
        self.token = token
        self.fail = fail
        self.emitted = []
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.ack_result = {"success": True}
        self.ack_error = None
        self.never_ack = False
        self.ack_timeouts = []
        self.handshake = None
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self):
        self.connect_calls += 1
        if self.handshake is not None:
            await self.handshake.wait()
        if self.fail:
            await self._dispatch(CONNECT_ERROR, OSError("connection refused"))
            return
        self._connected = True
        await self._dispatch(CONNECT)

    async def disconnect(self):
        self.disconnect_calls += 1
        if self._connected:
            self._connected = False
            await self._dispatch(DISCONNECT, DisconnectCause.CLIENT_REQUESTED)

    async def emit(self, event, data=None):
        if not self._connected:
            raise RealtimeError("Not connected")
        self.emitted.append((event, data))

    async def emit_with_ack(self, event, data=None, timeout=None):
        if not self._connected:
            raise RealtimeError("Not connected")
        self.emitted.append((event, data))
        self.ack_timeouts.append(timeout)
        if self.ack_error is not None:
            raise self.ack_error
        if self.never_ack:
            await asyncio.wait_for(asyncio.Event().wait(), timeout)
        return self.ack_result

    async def server_event(self, event, data=None):
        await self._dispatch(event, data)

    async def drop(self, cause: DisconnectCause):
        self._connected = False
        await self._dispatch(DISCONNECT, cause)

    def events(self, name):
        return [data for event, data in self.emitted if event == name]


class TransportFactory:
    """Creates FakeTransports; the first ``failures`` attempts fail."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.handshake = None
        self.transports = []

    def __call__(self, url, token):
        transport = FakeTransport(url, token, fail=len(self.transports) < self.failures)
        transport.handshake = self.handshake
        self.transports.append(transport)
        return transport

    @property
    def latest(self) -> FakeTransport:
        return self.transports[-1]


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


async def wait_for_state(session, state, timeout: float = 1.0):
    deadline = time.monotonic() + timeout
    while session.state != state:
        if time.monotonic() > deadline:
            raise AssertionError(f"session stuck in {session.state}, expected {state}")
        await asyncio.sleep(0.005)


async def wait_until(predicate, timeout: float = 1.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


def make_settings(**overrides):
    values = {
        "url": "ws://fixia.test/ws/chat",
        "heartbeat_interval": 3600,
        "remote_reconnect_delay": 5.0,
        "local_reconnect_delay": 1.0,
        "jitter_factor": 0.0,
    }
    values.update(overrides)
    return RealtimeSettings(**values)


class TestRealtimeSessionManager:
    """Test cases for RealtimeSessionManager."""

    @pytest.fixture
    def factory(self):
        return TransportFactory()

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def query_cache(self):
        return QueryCache()

    @pytest.fixture
    async def session(self, factory, query_cache, clock):
        session = RealtimeSessionManager(factory, query_cache, make_settings(), clock=clock)
        yield session
        await session.close()

    @pytest.fixture
    async def fast_session(self, factory, query_cache, clock):
        settings = make_settings(remote_reconnect_delay=0, local_reconnect_delay=0)
        session = RealtimeSessionManager(factory, query_cache, settings, clock=clock)
        yield session
        await session.close()

    @pytest.mark.asyncio
    async def test_start_connects(self, session, factory):
        await session.start(10, "token-abc")

        assert session.state == SessionState.CONNECTED
        assert session.quality == ConnectionQuality.EXCELLENT
        assert session.connected is True
        assert factory.latest.token == "token-abc"
        assert factory.latest.url == "ws://fixia.test/ws/chat"

    @pytest.mark.asyncio
    async def test_start_requires_user_and_token(self, session, factory):
        with pytest.raises(ValueError):
            await session.start(None, "token")
        with pytest.raises(ValueError):
            await session.start(10, "")

        assert factory.transports == []

    @pytest.mark.asyncio
    async def test_start_again_retires_previous_handle(self, session, factory):
        await session.start(10, "token-1")
        first = factory.latest

        await session.start(10, "token-2")

        assert first.disconnect_calls == 1
        assert len(factory.transports) == 2
        assert session.state == SessionState.CONNECTED
        assert factory.latest.token == "token-2"

    @pytest.mark.asyncio
    async def test_remote_disconnect_waits_longer_than_local(self, session, factory):
        """Server-initiated disconnects back off from the longer base delay."""
        await session.start(10, "token")
        await factory.latest.drop(DisconnectCause.REMOTE_INITIATED)
        remote_delay = session.last_reconnect_delay

        await session.start(10, "token")
        await factory.latest.drop(DisconnectCause.LOCAL_NETWORK_ERROR)
        local_delay = session.last_reconnect_delay

        assert remote_delay == 5.0
        assert local_delay == 1.0
        assert remote_delay >= local_delay
        assert session.state == SessionState.RECONNECTING
        assert session.quality == ConnectionQuality.DISCONNECTED

    @pytest.mark.asyncio
    async def test_remote_delay_exceeds_local_with_jitter(self, factory):
        settings = make_settings(jitter_factor=0.5)
        session = RealtimeSessionManager(factory, settings=settings)

        for _ in range(20):
            await session.start(10, "token")
            await factory.latest.drop(DisconnectCause.REMOTE_INITIATED)
            remote_delay = session.last_reconnect_delay

            await session.start(10, "token")
            await factory.latest.drop(DisconnectCause.UNKNOWN)
            local_delay = session.last_reconnect_delay

            assert remote_delay >= local_delay

        await session.close()

    @pytest.mark.asyncio
    async def test_backoff_grows_and_is_capped(self, factory):
        settings = make_settings(max_reconnect_delay=3.0, max_reconnect_attempts=None)
        session = RealtimeSessionManager(factory, settings=settings)
        await session.start(10, "token")

        delays = []
        for _ in range(4):
            session._schedule_reconnect(DisconnectCause.LOCAL_NETWORK_ERROR)
            delays.append(session.last_reconnect_delay)

        assert delays == [1.0, 2.0, 3.0, 3.0]
        await session.close()

    @pytest.mark.asyncio
    async def test_single_pending_reconnect(self, session, factory):
        await session.start(10, "token")
        await factory.latest.drop(DisconnectCause.LOCAL_NETWORK_ERROR)
        first_task = session._reconnect_task

        session._schedule_reconnect(DisconnectCause.LOCAL_NETWORK_ERROR)
        await asyncio.sleep(0)

        assert first_task.cancelled()
        assert session._reconnect_task is not first_task

    @pytest.mark.asyncio
    async def test_client_requested_disconnect_does_not_reconnect(self, session, factory):
        await session.start(10, "token")

        await factory.latest.drop(DisconnectCause.CLIENT_REQUESTED)

        assert session.state == SessionState.DISCONNECTED
        assert session._reconnect_task is None
        assert session.reconnect_count == 0

    @pytest.mark.asyncio
    async def test_subscriptions_replayed_once_after_reconnect(self, fast_session, factory):
        """Each joined chat is re-joined exactly once on the new connection."""
        await fast_session.start(10, "token")
        await fast_session.join("chat-a")
        await fast_session.join("chat-b")
        first = factory.latest

        await first.drop(DisconnectCause.LOCAL_NETWORK_ERROR)
        await wait_for_state(fast_session, SessionState.CONNECTED)

        second = factory.latest
        assert second is not first
        assert sorted(second.events("join_chat")) == ["chat-a", "chat-b"]
        assert fast_session.reconnect_attempts == 0
        assert fast_session.reconnect_count == 1

    @pytest.mark.asyncio
    async def test_chats_joined_while_disconnected_are_sent_on_connect(self, session, factory):
        assert await session.join("chat-a") is True

        await session.start(10, "token")

        assert factory.latest.events("join_chat") == ["chat-a"]

    @pytest.mark.asyncio
    async def test_join_and_leave_are_idempotent(self, session, factory):
        await session.start(10, "token")

        assert await session.join("chat-a") is True
        assert await session.join("chat-a") is False
        assert await session.leave("chat-a") is True
        assert await session.leave("chat-a") is False

        assert factory.latest.events("join_chat") == ["chat-a"]
        assert factory.latest.events("leave_chat") == ["chat-a"]
        assert session.active_chats == set()

    @pytest.mark.asyncio
    async def test_latency_classification(self, session, factory, clock):
        await session.start(10, "token")
        expected = [
            (99, ConnectionQuality.EXCELLENT),
            (100, ConnectionQuality.GOOD),
            (299, ConnectionQuality.GOOD),
            (300, ConnectionQuality.POOR),
            (500, ConnectionQuality.POOR),
        ]

        for latency_ms, quality in expected:
            clock.now = 10.0
            assert await session.ping() is True
            clock.now = 10.0 + latency_ms / 1000
            await factory.latest.server_event("pong")

            assert session.get_latency() == latency_ms
            assert session.quality == quality

    @pytest.mark.asyncio
    async def test_latency_history_is_bounded(self, session, factory, clock):
        await session.start(10, "token")

        for sample in range(25):
            clock.now = 0.0
            await session.ping()
            clock.now = (sample + 1) / 1000
            await factory.latest.server_event("pong")

        assert len(session.latency) == 20
        assert session.latency.samples[0] == 6
        assert session.get_connection_stats()["average_latency"] == sum(range(6, 26)) / 20

    @pytest.mark.asyncio
    async def test_pong_without_ping_is_ignored(self, session, factory):
        await session.start(10, "token")

        await factory.latest.server_event("pong")

        assert session.get_latency() == 0.0
        assert session.quality == ConnectionQuality.EXCELLENT

    @pytest.mark.asyncio
    async def test_heartbeat_emits_ping(self, factory):
        session = RealtimeSessionManager(factory, settings=make_settings(heartbeat_interval=0.01))
        await session.start(10, "token")

        await asyncio.sleep(0.05)

        assert len(factory.latest.events("ping")) >= 1
        await session.close()
        assert session._heartbeat_task is None

    @pytest.mark.asyncio
    async def test_send_message_success(self, session, factory):
        await session.start(10, "token")

        assert await session.send_message("chat-a", "Hola") is True

        payload = factory.latest.events("send_message")[0]
        assert payload["chat_room_id"] == "chat-a"
        assert payload["content"] == "Hola"
        assert payload["message_type"] == "text"
        assert session.get_connection_stats()["messages_count"] == 1

    @pytest.mark.asyncio
    async def test_send_message_rejected_ack(self, session, factory):
        await session.start(10, "token")
        factory.latest.ack_result = {"success": False, "error": "Not a participant of this chat"}

        assert await session.send_message("chat-a", "Hola") is False

    @pytest.mark.asyncio
    async def test_send_message_when_disconnected_fails_fast(self, session, factory):
        assert await session.send_message("chat-a", "Hola") is False
        assert factory.transports == []

    @pytest.mark.asyncio
    async def test_send_message_transport_error(self, session, factory):
        await session.start(10, "token")
        factory.latest.ack_error = RealtimeError("Connection closed before acknowledgment")

        assert await session.send_message("chat-a", "Hola") is False

    @pytest.mark.asyncio
    async def test_send_message_times_out(self, factory):
        """A missing ack resolves False no earlier than the timeout."""
        session = RealtimeSessionManager(factory, settings=make_settings(ack_timeout=0.05))
        await session.start(10, "token")
        factory.latest.never_ack = True

        started = time.monotonic()
        result = await session.send_message("chat-a", "Hola")
        elapsed = time.monotonic() - started

        assert result is False
        assert elapsed >= 0.05
        await session.close()

    def test_default_ack_timeout(self):
        assert RealtimeSettings().ack_timeout == 5.0

    @pytest.mark.asyncio
    async def test_ack_timeout_bounds_only_the_ack_wait(self, session, factory):
        await session.start(10, "token")

        await session.send_message("chat-a", "Hola")

        assert factory.latest.ack_timeouts == [5.0]

    @pytest.mark.asyncio
    async def test_new_chat_message_invalidates_queries(self, session, factory, query_cache):
        await session.start(10, "token")
        query_cache.set_query_data(chat_messages_key("chat-a"), {"messages": []})
        query_cache.set_query_data(chat_messages_key("chat-b"), {"messages": []})
        query_cache.set_query_data(chat_list_key(10), [{"id": "chat-a"}])

        await factory.latest.server_event("new_chat_message", {"chat_room_id": "chat-a", "content": "Hola"})

        assert chat_messages_key("chat-a") not in query_cache
        assert chat_list_key(10) not in query_cache
        assert chat_messages_key("chat-b") in query_cache
        assert session.messages_count == 1
        assert session.last_activity is not None

    @pytest.mark.asyncio
    async def test_message_status_update_patches_cached_messages(self, session, factory, query_cache):
        await session.start(10, "token")
        query_cache.set_query_data(chat_messages_key("chat-a"), {
            "messages": [{"id": 1, "status": "sent"}, {"id": 2, "status": "sent"}]
        })

        await factory.latest.server_event(
            "message_status_update",
            {"chat_room_id": "chat-a", "message_id": 2, "status": "read"}
        )

        assert query_cache.get_query_data(chat_messages_key("chat-a")) == {
            "messages": [{"id": 1, "status": "sent"}, {"id": 2, "status": "read"}]
        }

    @pytest.mark.asyncio
    async def test_message_status_update_without_cached_messages(self, session, factory, query_cache):
        await session.start(10, "token")

        await factory.latest.server_event(
            "message_status_update",
            {"chat_room_id": "chat-a", "message_id": 2, "status": "read"}
        )

        assert chat_messages_key("chat-a") not in query_cache

    @pytest.mark.asyncio
    async def test_connect_error_schedules_reconnect(self, query_cache, clock):
        factory = TransportFactory(failures=1)
        session = RealtimeSessionManager(factory, query_cache, make_settings(), clock=clock)

        await session.start(10, "token")

        assert session.quality == ConnectionQuality.POOR
        assert session.state == SessionState.RECONNECTING
        assert session.reconnect_attempts == 1
        assert session.reconnect_count == 1
        assert session.last_reconnect_delay == 1.0
        await session.close()

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, query_cache):
        factory = TransportFactory(failures=100)
        settings = make_settings(remote_reconnect_delay=0, local_reconnect_delay=0, max_reconnect_attempts=2)
        session = RealtimeSessionManager(factory, query_cache, settings)

        await session.start(10, "token")
        await wait_for_state(session, SessionState.FAILED)

        assert len(factory.transports) == 3
        assert session._reconnect_task is None

        factory.failures = 0
        await session.reconnect()

        assert session.state == SessionState.CONNECTED
        await session.close()

    @pytest.mark.asyncio
    async def test_events_from_retired_transport_are_ignored(self, session, factory):
        await session.start(10, "token")
        old = factory.latest
        await session.start(10, "token")

        await old.drop(DisconnectCause.REMOTE_INITIATED)

        assert session.state == SessionState.CONNECTED
        assert session._reconnect_task is None

    @pytest.mark.asyncio
    async def test_disconnect_is_user_initiated(self, session, factory):
        await session.start(10, "token")

        await session.disconnect()

        assert session.state == SessionState.DISCONNECTED
        assert session.quality == ConnectionQuality.DISCONNECTED
        assert session._reconnect_task is None

    @pytest.mark.asyncio
    async def test_close_tears_everything_down(self, session, factory):
        await session.start(10, "token")
        await session.join("chat-a")
        await factory.latest.drop(DisconnectCause.LOCAL_NETWORK_ERROR)
        pending = session._reconnect_task

        await session.close()
        await asyncio.sleep(0)

        assert session.state == SessionState.CLOSED
        assert session.active_chats == set()
        assert pending.cancelled()
        assert len(factory.transports) == 1

    @pytest.mark.asyncio
    async def test_close_cancels_reconnect_while_connecting(self, fast_session, factory):
        await fast_session.start(10, "token")
        factory.handshake = asyncio.Event()
        await factory.latest.drop(DisconnectCause.LOCAL_NETWORK_ERROR)
        await wait_until(lambda: len(factory.transports) == 2 and factory.latest.connect_calls == 1)
        in_flight = fast_session._reconnect_task

        await fast_session.close()
        factory.handshake.set()
        await asyncio.sleep(0.01)

        assert in_flight is not None
        assert in_flight.cancelled()
        assert factory.latest.connected is False
        assert fast_session.state == SessionState.CLOSED

    @pytest.mark.asyncio
    async def test_close_during_handshake_releases_socket(self):
        """Logging out mid-handshake leaves no open socket on the server."""
        handler_done = asyncio.Event()

        async def slow_handshake(connection, request):
            await asyncio.sleep(0.3)

        async def handler(websocket):
            try:
                async for _ in websocket:
                    pass
            finally:
                handler_done.set()

        async with serve(handler, "127.0.0.1", 0, process_request=slow_handshake) as server:
            port = server.sockets[0].getsockname()[1]
            session = RealtimeSessionManager(settings=make_settings(url=f"ws://127.0.0.1:{port}"))

            starting = asyncio.create_task(session.start(10, "token"))
            await asyncio.sleep(0.05)
            await session.close()
            await starting

            await asyncio.wait_for(handler_done.wait(), timeout=2)

        assert session.state == SessionState.CLOSED
        assert session.connected is False

    @pytest.mark.asyncio
    async def test_reconnect_after_close_is_ignored(self, session, factory):
        await session.start(10, "token")
        await session.close()

        await session.reconnect()

        assert session.state == SessionState.CLOSED
        assert len(factory.transports) == 1

    @pytest.mark.asyncio
    async def test_listeners_receive_snapshots(self, session, factory):
        snapshots = []
        remove = session.add_listener(snapshots.append)

        await session.start(10, "token")
        await session.join("chat-a")
        await factory.latest.drop(DisconnectCause.LOCAL_NETWORK_ERROR)
        remove()
        await session.close()

        states = [snapshot.state for snapshot in snapshots]
        assert states[:2] == [SessionState.CONNECTING, SessionState.CONNECTED]
        assert states[-1] == SessionState.RECONNECTING
        assert snapshots[-1].active_chats == frozenset({"chat-a"})
        assert snapshots[-1].reconnect_attempts == 1

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_session(self, session):
        def broken(snapshot):
            raise RuntimeError("render failed")

        session.add_listener(broken)
        await session.start(10, "token")

        assert session.state == SessionState.CONNECTED

    @pytest.mark.asyncio
    async def test_connection_stats(self, session, clock):
        clock.now = 100.0
        await session.start(10, "token")
        clock.now = 130.0

        stats = session.get_connection_stats()

        assert stats == {
            "uptime": 30.0,
            "messages_count": 0,
            "reconnect_count": 0,
            "average_latency": 0.0,
        }
