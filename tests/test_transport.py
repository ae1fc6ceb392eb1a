"""Tests for the live channel transports."""

import pytest

from reride.chat.transport import NullTransport, SocketIOTransport, WebSocketTransport, build_transport
from reride.shared.config import Settings
from reride.shared.errors import TransportError


class TestTransportSelection:
    """Tests for build_transport."""

    @pytest.mark.parametrize(
        "name, cls",
        [("socketio", SocketIOTransport), ("websocket", WebSocketTransport), ("none", NullTransport)],
    )
    def test_selects_by_setting(self, name, cls):
        assert isinstance(build_transport(Settings(CHAT_TRANSPORT=name)), cls)

    def test_websocket_uses_configured_ceiling(self):
        transport = build_transport(Settings(CHAT_TRANSPORT="websocket", CHAT_RECONNECT_ATTEMPTS=7))
        assert transport.reconnect_attempts == 7


class TestHandlers:
    """Tests for handler registration and dispatch."""

    async def test_frames_dispatch_to_sync_and_async_handlers(self):
        transport = WebSocketTransport("ws://127.0.0.1:1/ws/chat")
        received = []

        async def async_handler(data):
            received.append(("async", data))

        transport.on("conversation:typing", lambda data: received.append(("sync", data)))
        transport.on("conversation:typing", async_handler)
        await transport._handle_frame('{"event": "conversation:typing", "data": {"isTyping": true}}')

        assert received == [("sync", {"isTyping": True}), ("async", {"isTyping": True})]

    async def test_invalid_frames_are_skipped(self):
        transport = WebSocketTransport("ws://127.0.0.1:1/ws/chat")
        received = []
        transport.on("conversation:typing", received.append)

        await transport._handle_frame("not json")
        await transport._handle_frame('{"data": {}}')

        assert received == []

    async def test_off_removes_handler(self):
        transport = NullTransport()
        received = []
        transport.on("user:online", received.append)
        transport.off("user:online", received.append)

        await transport._dispatch("user:online", {"userEmail": "a@x.com"})

        assert received == []

    async def test_failing_handler_is_isolated(self):
        transport = NullTransport()
        received = []

        def broken(_data):
            raise RuntimeError("boom")

        transport.on("connect", broken)
        transport.on("connect", received.append)
        await transport._dispatch("connect")

        assert received == [None]


class TestOfflineEmit:
    """Tests for emitting without an open channel."""

    async def test_websocket_emit_requires_connection(self):
        transport = WebSocketTransport("ws://127.0.0.1:1/ws/chat")
        assert not transport.connected
        with pytest.raises(TransportError):
            await transport.emit("conversation:join", {"conversationId": "c_1"})

    async def test_null_transport_never_connects(self):
        transport = NullTransport()
        await transport.connect("a@x.com", "customer")
        assert not transport.connected
        with pytest.raises(TransportError):
            await transport.emit("conversation:join", {"conversationId": "c_1"})

    async def test_websocket_connect_to_closed_port_fails_fast(self):
        transport = WebSocketTransport(
            "ws://127.0.0.1:1/ws/chat",
            reconnect_attempts=1,
            reconnect_delay=0.01,
            reconnect_delay_max=0.01,
            connect_timeout=0.5,
        )
        errors = []
        transport.on("connect_error", errors.append)

        with pytest.raises(TransportError):
            await transport.connect("a@x.com", "customer")
        await transport.disconnect()

        assert len(errors) == 1
        assert errors[0]["attempt"] == 1
