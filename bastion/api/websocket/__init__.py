"""WebSocket module for real-time SOC monitoring."""

from bastion.api.websocket.manager import ConnectionManager, get_connection_manager

__all__ = ["ConnectionManager", "get_connection_manager"]
