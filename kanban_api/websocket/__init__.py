"""WebSocket module for real-time board updates."""

from .manager import (
    ConnectionManager,
    MessageType,
    WebSocketConnection,
    envelope_to_message,
    get_board_room,
    manager,
)

__all__ = [
    "ConnectionManager",
    "MessageType",
    "WebSocketConnection",
    "envelope_to_message",
    "get_board_room",
    "manager",
]
