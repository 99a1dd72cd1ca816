"""Unit tests for WebSocket connection manager."""

from datetime import datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from kanban_api.config import settings
from kanban_api.main import app
from kanban_api.services.event_publisher import (
    LocalEventPublisher,
    build_envelope,
    get_event_publisher,
    set_event_publisher,
)
from kanban_api.websocket.manager import (
    ConnectionManager,
    MessageType,
    WebSocketConnection,
    envelope_to_message,
    get_board_room,
    manager,
)


@pytest.fixture
def local_publisher():
    """Install a fresh local publisher for the duration of a test."""
    previous = get_event_publisher()
    publisher = LocalEventPublisher()
    set_event_publisher(publisher)
    yield publisher
    set_event_publisher(previous)


def sent_types(websocket) -> list:
    return [c.args[0]["type"] for c in websocket.send_json.call_args_list]


class TestMessageType:
    """Tests for MessageType enum."""

    def test_message_type_values(self):
        """Test that message types have expected string values."""
        assert MessageType.CONNECTED == "connected"
        assert MessageType.JOIN_BOARD == "join_board"
        assert MessageType.BOARD_JOINED == "board_joined"
        assert MessageType.PING == "ping"
        assert MessageType.PONG == "pong"

    def test_message_type_is_string(self):
        """Test that MessageType values are strings."""
        for msg_type in MessageType:
            assert isinstance(msg_type.value, str)


class TestHelpers:
    """Tests for room names and envelope conversion."""

    def test_board_room(self):
        assert get_board_room("b1") == "board:b1"

    def test_envelope_to_message(self):
        envelope = build_envelope("task-created", {"boardId": "b1"}, "acme")

        message = envelope_to_message(envelope)

        assert message["type"] == "task-created"
        assert message["data"]["boardId"] == "b1"
        assert message["timestamp"] == envelope["timestamp"]


class TestWebSocketConnection:
    """Tests for WebSocketConnection dataclass."""

    def test_connection_creation(self):
        """Test creating a WebSocketConnection."""
        mock_ws = MagicMock()

        conn = WebSocketConnection(websocket=mock_ws, user_id="u1", tenant_id="acme")

        assert conn.websocket is mock_ws
        assert conn.tenant_key == "acme"
        assert isinstance(conn.connected_at, datetime)
        assert conn.rooms == set()

    def test_single_tenant_key(self):
        assert WebSocketConnection(websocket=MagicMock(), user_id="u1").tenant_key == "default"

    def test_connection_equality(self):
        """Connections are equal when they wrap the same websocket."""
        mock_ws = MagicMock()

        conn1 = WebSocketConnection(websocket=mock_ws, user_id="u1")
        conn2 = WebSocketConnection(websocket=mock_ws, user_id="u1")
        conn3 = WebSocketConnection(websocket=MagicMock(), user_id="u1")

        assert conn1 == conn2
        assert conn1 != conn3
        assert hash(conn1) == hash(conn2)


class TestConnectionManagerInit:
    """Tests for ConnectionManager initialization."""

    def test_manager_init(self):
        mgr = ConnectionManager()

        assert mgr.total_connections == 0
        assert mgr.total_rooms == 0
        assert mgr.subscribed_tenants == []

    def test_global_manager_exists(self):
        assert isinstance(manager, ConnectionManager)


class TestConnect:
    """Tests for connection handling."""

    @pytest.mark.asyncio
    async def test_connect_subscribes_tenant_once(self, local_publisher):
        mgr = ConnectionManager()

        await mgr.connect(AsyncMock(), "u1", "acme")
        await mgr.connect(AsyncMock(), "u2", "acme")

        assert mgr.total_connections == 2
        assert mgr.subscribed_tenants == ["acme"]
        assert len(local_publisher._handlers["tenant_acme_events"]) == 1

    @pytest.mark.asyncio
    async def test_connect_sends_connected(self, local_publisher):
        mgr = ConnectionManager()
        ws = AsyncMock()

        connection = await mgr.connect(ws, "u1", "acme")

        ws.accept.assert_awaited_once()
        assert sent_types(ws) == [MessageType.CONNECTED]
        assert connection.user_id == "u1"

    @pytest.mark.asyncio
    async def test_connection_limit(self, local_publisher, monkeypatch):
        monkeypatch.setattr(settings, "ws_max_connections_per_user", 1)
        mgr = ConnectionManager()
        await mgr.connect(AsyncMock(), "u1", "acme")
        ws = AsyncMock()

        result = await mgr.connect(ws, "u1", "acme")

        assert result is None
        ws.close.assert_awaited_once()
        ws.accept.assert_not_called()

    @pytest.mark.asyncio
    async def test_last_disconnect_releases_subscription(self, local_publisher):
        mgr = ConnectionManager()
        ws1, ws2 = AsyncMock(), AsyncMock()
        await mgr.connect(ws1, "u1", "acme")
        await mgr.connect(ws2, "u2", "acme")

        await mgr.disconnect(ws1)
        assert mgr.subscribed_tenants == ["acme"]

        await mgr.disconnect(ws2)
        assert mgr.subscribed_tenants == []
        assert "tenant_acme_events" not in local_publisher._handlers

    @pytest.mark.asyncio
    async def test_disconnect_unknown_socket(self, local_publisher):
        await ConnectionManager().disconnect(AsyncMock())


class TestRoomsAndMessages:
    """Tests for client frames and board rooms."""

    @pytest.mark.asyncio
    async def test_ping_pong(self, local_publisher):
        mgr = ConnectionManager()
        ws = AsyncMock()
        connection = await mgr.connect(ws, "u1", "acme")

        await mgr.handle_message(connection, {"type": "ping"})

        assert sent_types(ws)[-1] == MessageType.PONG

    @pytest.mark.asyncio
    async def test_join_and_leave_board(self, local_publisher):
        mgr = ConnectionManager()
        ws = AsyncMock()
        connection = await mgr.connect(ws, "u1", "acme")

        await mgr.handle_message(connection, {"type": "join_board", "data": {"boardId": "b1"}})
        assert mgr.get_room_count("acme", "board:b1") == 1

        await mgr.handle_message(connection, {"type": "leave_board", "data": {"boardId": "b1"}})
        assert mgr.get_room_count("acme", "board:b1") == 0
        assert sent_types(ws)[-2:] == [MessageType.BOARD_JOINED, MessageType.BOARD_LEFT]

    @pytest.mark.asyncio
    async def test_unknown_message_is_ignored(self, local_publisher):
        mgr = ConnectionManager()
        ws = AsyncMock()
        connection = await mgr.connect(ws, "u1", "acme")

        await mgr.handle_message(connection, {"type": "dance"})

        assert sent_types(ws) == [MessageType.CONNECTED]


class TestEventFanOut:
    """Published envelopes reach the right sockets."""

    @pytest.mark.asyncio
    async def test_board_event_reaches_board_room_only(self, local_publisher):
        mgr = ConnectionManager()
        watcher, bystander = AsyncMock(), AsyncMock()
        conn = await mgr.connect(watcher, "u1", "acme")
        await mgr.connect(bystander, "u2", "acme")
        await mgr.join_room(conn, get_board_room("b1"))

        await local_publisher.publish("task-created", {"boardId": "b1", "taskId": "t1"}, "acme")

        assert sent_types(watcher)[-1] == "task-created"
        assert "task-created" not in sent_types(bystander)

    @pytest.mark.asyncio
    async def test_event_without_board_reaches_whole_tenant(self, local_publisher):
        mgr = ConnectionManager()
        ws1, ws2 = AsyncMock(), AsyncMock()
        await mgr.connect(ws1, "u1", "acme")
        await mgr.connect(ws2, "u2", "acme")

        await local_publisher.publish("board-reordered", {"boards": []}, "acme")

        assert sent_types(ws1)[-1] == "board-reordered"
        assert sent_types(ws2)[-1] == "board-reordered"

    @pytest.mark.asyncio
    async def test_other_tenant_never_receives(self, local_publisher):
        """Same board id in two tenants does not share a room."""
        mgr = ConnectionManager()
        acme, beta = AsyncMock(), AsyncMock()
        acme_conn = await mgr.connect(acme, "u1", "acme")
        beta_conn = await mgr.connect(beta, "u2", "beta")
        await mgr.join_room(acme_conn, get_board_room("b1"))
        await mgr.join_room(beta_conn, get_board_room("b1"))

        await local_publisher.publish("task-created", {"boardId": "b1"}, "acme")

        assert "task-created" in sent_types(acme)
        assert "task-created" not in sent_types(beta)

    @pytest.mark.asyncio
    async def test_mismatched_envelope_is_dropped(self, local_publisher):
        mgr = ConnectionManager()
        ws = AsyncMock()
        await mgr.connect(ws, "u1", "acme")

        with patch("kanban_api.websocket.manager.logger") as mock_logger:
            sent = await mgr.dispatch_envelope("acme", build_envelope("x", {}, "beta"))

        assert sent == 0
        mock_logger.warning.assert_called_once()

    @pytest.mark.asyncio
    async def test_failed_send_is_not_counted(self, local_publisher):
        mgr = ConnectionManager()
        good, broken = AsyncMock(), AsyncMock()
        await mgr.connect(good, "u1", "acme")
        await mgr.connect(broken, "u2", "acme")
        broken.send_json.side_effect = RuntimeError("closed")

        sent = await mgr.dispatch_envelope("acme", build_envelope("x", {}, "acme"))

        assert sent == 1


class TestWebSocketEndpoint:
    """Handshake checks of the /ws endpoint."""

    @pytest.mark.parametrize("url", ["/ws", "/ws?token=invalid"])
    def test_rejects_without_valid_token(self, url):
        client = TestClient(app)

        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect(url):
                pass

        assert exc_info.value.code == 4001
