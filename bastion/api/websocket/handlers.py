"""
WebSocket Message Handlers

Processes incoming WebSocket messages from SOC monitoring clients.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from bastion.api.config import settings
from bastion.api.websocket.events import ErrorEvent, EventType
from bastion.api.websocket.manager import ClientConnection, ConnectionManager

logger = logging.getLogger(__name__)


class MessageHandler:
    """Handles incoming WebSocket messages."""

    def __init__(
        self,
        manager: ConnectionManager,
        allowed_rooms: Optional[Iterable[str]] = None,
    ):
        self.manager = manager
        self.allowed_rooms = set(allowed_rooms or {settings.SOC_MONITORING_ROOM})
        self._handlers = {
            "ping": self._handle_ping,
            "pong": self._handle_pong,
            "join-room": self._handle_join_room,
            "leave-room": self._handle_leave_room,
        }

    async def handle_message(
        self,
        connection: ClientConnection,
        message: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        """
        Process an incoming WebSocket message.

        Args:
            connection: Client connection
            message: Parsed message dict

        Returns:
            Optional response dict
        """
        msg_type = message.get("type")

        if not msg_type:
            return self._error(
                "INVALID_MESSAGE", "Message type required"
            )

        handler = self._handlers.get(msg_type)
        if handler:
            return await handler(connection, message)
        else:
            logger.warning(f"Unknown message type: {msg_type}")
            return self._error(
                "UNKNOWN_TYPE", f"Unknown message type: {msg_type}"
            )

    async def _handle_ping(
        self, connection: ClientConnection, message: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Handle ping message."""
        connection.last_ping = datetime.now(timezone.utc)
        return {
            "type": EventType.PONG.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "client_id": connection.client_id,
        }

    async def _handle_pong(
        self, connection: ClientConnection, message: Dict[str, Any]
    ) -> None:
        """Handle pong response."""
        connection.last_ping = datetime.now(timezone.utc)
        return None

    async def _handle_join_room(
        self, connection: ClientConnection, message: Dict[str, Any]
    ) -> Dict[str, Any]:
        room = message.get("room") or settings.SOC_MONITORING_ROOM

        if room not in self.allowed_rooms:
            return self._error(
                "UNKNOWN_ROOM", f"Unknown room: {room}"
            )

        await self.manager.join_room(connection.client_id, room)
        return {
            "type": EventType.JOINED_ROOM.value,
            "room": room,
            "rooms": sorted(connection.rooms),
        }

    async def _handle_leave_room(
        self, connection: ClientConnection, message: Dict[str, Any]
    ) -> Dict[str, Any]:
        room = message.get("room") or settings.SOC_MONITORING_ROOM
        left = await self.manager.leave_room(connection.client_id, room)
        return {
            "type": EventType.LEFT_ROOM.value,
            "room": room,
            "was_member": left,
            "rooms": sorted(connection.rooms),
        }

    @staticmethod
    def _error(code: str, message: str) -> Dict[str, Any]:
        """Error response; the caller sends it back to the client."""
        return ErrorEvent(code=code, message=message).model_dump(mode="json")
