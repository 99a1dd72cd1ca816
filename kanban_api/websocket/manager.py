"""WebSocket connection manager with tenant-scoped board rooms.

This module fans published kanban events out to browser connections:
- Connections belong to exactly one tenant (resolved from the host)
- Clients join ``board:<id>`` rooms to receive that board's events
- The manager subscribes once per tenant to the tenant's event channel and
  drops the subscription when the tenant's last connection leaves
- Envelopes carrying ``data.boardId`` go to that board's room; others go to
  every connection of the tenant
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from fastapi import WebSocket

from ..config import settings
from ..services.event_publisher import get_event_publisher

logger = logging.getLogger(__name__)

DEFAULT_TENANT = "default"


class MessageType(str, Enum):
    """WebSocket message types."""

    # Connection events
    CONNECTED = "connected"
    ERROR = "error"

    # Room events
    JOIN_BOARD = "join_board"
    LEAVE_BOARD = "leave_board"
    BOARD_JOINED = "board_joined"
    BOARD_LEFT = "board_left"

    # Ping/pong for keepalive
    PING = "ping"
    PONG = "pong"


def get_board_room(board_id: str) -> str:
    return f"board:{board_id}"


def envelope_to_message(envelope: dict) -> dict[str, Any]:
    """Client frame for a published envelope."""
    return {
        "type": envelope.get("event"),
        "data": envelope.get("data") or {},
        "timestamp": envelope.get("timestamp"),
    }


@dataclass
class WebSocketConnection:
    """Represents a WebSocket connection with user and tenant context."""

    websocket: WebSocket
    user_id: str
    tenant_id: Optional[str] = None
    connected_at: datetime = field(default_factory=datetime.utcnow)
    rooms: set[str] = field(default_factory=set)

    @property
    def tenant_key(self) -> str:
        return self.tenant_id or DEFAULT_TENANT

    def __hash__(self) -> int:
        return id(self.websocket)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, WebSocketConnection):
            return False
        return id(self.websocket) == id(other.websocket)


class ConnectionManager:
    """
    Tenant-aware WebSocket connection manager.

    Rooms are keyed by ``(tenant, room)`` so equal board ids in two tenants
    never share a room.
    """

    def __init__(self) -> None:
        # (tenant_key, room_id) -> connections
        self._rooms: dict[tuple[str, str], set[WebSocketConnection]] = {}
        self._connections: dict[WebSocket, WebSocketConnection] = {}
        # tenant_key -> connections
        self._tenant_connections: dict[str, set[WebSocketConnection]] = {}
        self._user_connections: dict[str, set[WebSocketConnection]] = {}
        # tenant_key -> handler registered with the event publisher
        self._subscriptions: dict[str, Callable[[dict], Awaitable[None]]] = {}
        self._lock = asyncio.Lock()

    @property
    def total_connections(self) -> int:
        return len(self._connections)

    @property
    def total_rooms(self) -> int:
        return len(self._rooms)

    @property
    def subscribed_tenants(self) -> list[str]:
        return list(self._subscriptions)

    def get_room_count(self, tenant_id: Optional[str], room_id: str) -> int:
        return len(self._rooms.get((tenant_id or DEFAULT_TENANT, room_id), set()))

    def get_connection(self, websocket: WebSocket) -> Optional[WebSocketConnection]:
        return self._connections.get(websocket)

    # =========================================================================
    # Tenant subscriptions
    # =========================================================================

    def _make_tenant_handler(self, tenant_key: str) -> Callable[[dict], Awaitable[None]]:
        async def handler(envelope: dict) -> None:
            await self.dispatch_envelope(tenant_key, envelope)
        return handler

    async def _ensure_subscribed(self, connection: WebSocketConnection) -> None:
        key = connection.tenant_key
        if key in self._subscriptions:
            return
        handler = self._make_tenant_handler(key)
        self._subscriptions[key] = handler
        await get_event_publisher().subscribe(connection.tenant_id, handler)
        logger.info(f"Subscribed to events of tenant {key}")

    async def _release_subscription(self, connection: WebSocketConnection) -> None:
        key = connection.tenant_key
        if self._tenant_connections.get(key):
            return
        handler = self._subscriptions.pop(key, None)
        if handler is not None:
            await get_event_publisher().unsubscribe(connection.tenant_id, handler)
            logger.info(f"Unsubscribed from events of tenant {key}")

    async def dispatch_envelope(self, tenant_key: str, envelope: dict) -> int:
        """
        Forward one envelope to the local connections of a tenant.

        Returns:
            Number of successful sends
        """
        if (envelope.get("tenant_id") or DEFAULT_TENANT) != tenant_key:
            logger.warning(
                f"Dropping envelope for tenant {envelope.get('tenant_id')} "
                f"received on channel of {tenant_key}"
            )
            return 0

        message = envelope_to_message(envelope)
        board_id = message["data"].get("boardId")
        if board_id:
            connections = self._rooms.get((tenant_key, get_board_room(board_id)), set()).copy()
        else:
            connections = self._tenant_connections.get(tenant_key, set()).copy()
        return await self._send_many(connections, message)

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def connect(
        self,
        websocket: WebSocket,
        user_id: str,
        tenant_id: Optional[str] = None,
    ) -> Optional[WebSocketConnection]:
        """
        Accept a WebSocket connection and register it.

        Returns:
            The connection wrapper, or None if the per-user limit was hit
        """
        current_connections = len(self._user_connections.get(user_id, set()))
        if current_connections >= settings.ws_max_connections_per_user:
            logger.warning(
                f"Connection limit reached for user {user_id}: "
                f"{current_connections}/{settings.ws_max_connections_per_user}"
            )
            await websocket.close(code=4029, reason="Too many connections")
            return None

        await websocket.accept()

        connection = WebSocketConnection(
            websocket=websocket,
            user_id=user_id,
            tenant_id=tenant_id,
        )

        async with self._lock:
            self._connections[websocket] = connection
            self._user_connections.setdefault(user_id, set()).add(connection)
            self._tenant_connections.setdefault(connection.tenant_key, set()).add(connection)
            await self._ensure_subscribed(connection)

        logger.info(
            f"WebSocket connected: user={user_id}, tenant={connection.tenant_key}, "
            f"total_connections={self.total_connections}"
        )

        await self.send_personal(
            connection,
            {
                "type": MessageType.CONNECTED,
                "data": {
                    "user_id": user_id,
                    "connected_at": connection.connected_at.isoformat(),
                },
            },
        )
        return connection

    async def disconnect(self, websocket: WebSocket) -> None:
        """Unregister a WebSocket and clean up its rooms and subscription."""
        async with self._lock:
            connection = self._connections.pop(websocket, None)
            if connection is None:
                return

            user_conns = self._user_connections.get(connection.user_id)
            if user_conns is not None:
                user_conns.discard(connection)
                if not user_conns:
                    del self._user_connections[connection.user_id]

            tenant_conns = self._tenant_connections.get(connection.tenant_key)
            if tenant_conns is not None:
                tenant_conns.discard(connection)
                if not tenant_conns:
                    del self._tenant_connections[connection.tenant_key]

            for room_id in list(connection.rooms):
                key = (connection.tenant_key, room_id)
                if key in self._rooms:
                    self._rooms[key].discard(connection)
                    if not self._rooms[key]:
                        del self._rooms[key]

            await self._release_subscription(connection)

        logger.info(
            f"WebSocket disconnected: user={connection.user_id}, "
            f"total_connections={self.total_connections}"
        )

    # =========================================================================
    # Rooms
    # =========================================================================

    async def join_room(self, connection: WebSocketConnection, room_id: str) -> None:
        async with self._lock:
            self._rooms.setdefault((connection.tenant_key, room_id), set()).add(connection)
            connection.rooms.add(room_id)

        await self.send_personal(
            connection,
            {
                "type": MessageType.BOARD_JOINED,
                "data": {
                    "room_id": room_id,
                    "user_count": self.get_room_count(connection.tenant_id, room_id),
                },
            },
        )

    async def leave_room(self, connection: WebSocketConnection, room_id: str) -> None:
        async with self._lock:
            key = (connection.tenant_key, room_id)
            if key in self._rooms:
                self._rooms[key].discard(connection)
                if not self._rooms[key]:
                    del self._rooms[key]
            connection.rooms.discard(room_id)

        await self.send_personal(
            connection,
            {"type": MessageType.BOARD_LEFT, "data": {"room_id": room_id}},
        )

    # =========================================================================
    # Sending
    # =========================================================================

    async def send_personal(
        self,
        connection: WebSocketConnection,
        message: dict[str, Any],
    ) -> bool:
        """Send a message to one connection; False if the socket is gone."""
        try:
            await connection.websocket.send_json(message)
            return True
        except Exception:
            return False

    async def _send_many(
        self,
        connections: set[WebSocketConnection],
        message: dict[str, Any],
    ) -> int:
        if not connections:
            return 0
        results = await asyncio.gather(
            *(self.send_personal(conn, message) for conn in connections),
            return_exceptions=True,
        )
        return sum(1 for r in results if r is True)

    async def handle_message(
        self,
        connection: WebSocketConnection,
        data: dict[str, Any],
    ) -> None:
        """Handle an incoming client frame."""
        message_type = data.get("type")
        payload = data.get("data") or {}

        if message_type == MessageType.PING:
            await self.send_personal(connection, {"type": MessageType.PONG, "data": {}})

        elif message_type == MessageType.JOIN_BOARD:
            board_id = payload.get("boardId")
            if board_id:
                await self.join_room(connection, get_board_room(board_id))

        elif message_type == MessageType.LEAVE_BOARD:
            board_id = payload.get("boardId")
            if board_id:
                await self.leave_room(connection, get_board_room(board_id))

        else:
            logger.debug(
                f"Unhandled message type: {message_type} from user {connection.user_id}"
            )


# Global singleton instance
manager = ConnectionManager()
