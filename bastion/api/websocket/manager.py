"""
WebSocket Connection Manager

Manages WebSocket connections for real-time SOC updates.
Clients subscribe to named rooms; events are delivered per room.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set
from uuid import UUID

from fastapi import WebSocket

from bastion.api.config import settings
from bastion.api.websocket.events import BaseEvent, ConnectionEvent

logger = logging.getLogger(__name__)


class ClientConnection:
    """Represents a single WebSocket client connection."""

    def __init__(
        self,
        websocket: WebSocket,
        user_id: UUID,
        client_id: str,
    ):
        self.websocket = websocket
        self.user_id = user_id
        self.client_id = client_id
        self.connected_at = datetime.now(timezone.utc)
        self.last_ping = datetime.now(timezone.utc)
        self.rooms: Set[str] = set()

    async def send_event(self, event: BaseEvent) -> bool:
        """Send an event to this client."""
        try:
            await self.websocket.send_json(event.model_dump(mode="json"))
            return True
        except Exception as e:
            logger.error(f"Failed to send to client {self.client_id}: {e}")
            return False

    async def send_json(self, data: dict) -> bool:
        """Send raw JSON data."""
        try:
            await self.websocket.send_json(data)
            return True
        except Exception:
            return False


class ConnectionManager:
    """
    Manages all WebSocket connections.

    Features:
    - Room membership per client
    - Room broadcasting
    - Heartbeat monitoring
    - Dropping of clients whose sends fail
    """

    def __init__(self, heartbeat_interval: float = None):
        # client_id -> connection
        self._clients: Dict[str, ClientConnection] = {}
        # room -> client ids
        self._rooms: Dict[str, Set[str]] = {}
        # Guards _clients and _rooms
        self._lock = asyncio.Lock()
        # Heartbeat task
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._heartbeat_interval = heartbeat_interval or settings.WS_HEARTBEAT_INTERVAL_SEC
        self._running = False

    async def start(self):
        """Start the connection manager."""
        if self._running:
            return
        self._running = True
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.info("WebSocket connection manager started")

    async def stop(self):
        """Stop the connection manager and close all connections."""
        self._running = False
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass

        async with self._lock:
            for conn in self._clients.values():
                try:
                    await conn.websocket.close()
                except Exception:
                    pass
            self._clients.clear()
            self._rooms.clear()

        logger.info("WebSocket connection manager stopped")

    async def connect(
        self,
        websocket: WebSocket,
        user_id: UUID,
        client_id: str,
    ) -> ClientConnection:
        """
        Accept and register a new WebSocket connection.

        Args:
            websocket: FastAPI WebSocket instance
            user_id: Authenticated user ID
            client_id: Unique client identifier

        Returns:
            ClientConnection instance
        """
        await websocket.accept()

        connection = ClientConnection(
            websocket=websocket,
            user_id=user_id,
            client_id=client_id,
        )

        async with self._lock:
            self._clients[client_id] = connection

        logger.info(f"Client {client_id} connected for user {user_id}")

        await connection.send_event(
            ConnectionEvent(
                client_id=client_id,
                message="Connected to BASTION security monitoring",
            )
        )

        return connection

    async def disconnect(self, client_id: str):
        """Remove a client connection and its room memberships."""
        async with self._lock:
            connection = self._clients.pop(client_id, None)
            if connection is None:
                return

            for room in connection.rooms:
                members = self._rooms.get(room)
                if members is not None:
                    members.discard(client_id)
                    if not members:
                        del self._rooms[room]

        logger.info(f"Client {client_id} disconnected")

    async def join_room(self, client_id: str, room: str) -> bool:
        async with self._lock:
            connection = self._clients.get(client_id)
            if connection is None:
                return False
            self._rooms.setdefault(room, set()).add(client_id)
            connection.rooms.add(room)
        return True

    async def leave_room(self, client_id: str, room: str) -> bool:
        async with self._lock:
            connection = self._clients.get(client_id)
            if connection is None or room not in connection.rooms:
                return False
            connection.rooms.discard(room)
            members = self._rooms.get(room)
            if members is not None:
                members.discard(client_id)
                if not members:
                    del self._rooms[room]
        return True

    async def broadcast_to_room(self, room: str, event: BaseEvent) -> int:
        """
        Broadcast an event to every client in a room.

        Returns:
            Number of clients the event was delivered to
        """
        async with self._lock:
            connections = [
                self._clients[cid]
                for cid in self._rooms.get(room, set())
                if cid in self._clients
            ]

        return await self._deliver(connections, event)

    async def _deliver(self, connections: List[ClientConnection], event: BaseEvent) -> int:
        delivered = 0
        failed_clients = []
        for conn in connections:
            if await conn.send_event(event):
                delivered += 1
            else:
                failed_clients.append(conn.client_id)

        # Clean up failed connections
        for client_id in failed_clients:
            await self.disconnect(client_id)

        return delivered

    def get_room_client_count(self, room: str) -> int:
        return len(self._rooms.get(room, set()))

    def get_total_connections(self) -> int:
        """Get total number of active connections."""
        return len(self._clients)

    def get_stats(self) -> dict:
        """Get connection statistics."""
        return {
            "total_connections": len(self._clients),
            "rooms": {room: len(members) for room, members in self._rooms.items()},
            "running": self._running,
        }

    async def _heartbeat_loop(self):
        """Ping clients and drop the ones that stopped answering."""
        while self._running:
            try:
                await asyncio.sleep(self._heartbeat_interval)

                async with self._lock:
                    all_clients = list(self._clients.items())

                now = datetime.now(timezone.utc)
                stale_clients = []

                for client_id, conn in all_clients:
                    # Stale after four missed heartbeats
                    if (now - conn.last_ping).total_seconds() > self._heartbeat_interval * 4:
                        stale_clients.append(client_id)
                    else:
                        try:
                            await conn.websocket.send_json({
                                "type": "ping",
                                "timestamp": now.isoformat(),
                            })
                        except Exception:
                            stale_clients.append(client_id)

                for client_id in stale_clients:
                    logger.info(f"Disconnecting stale client: {client_id}")
                    await self.disconnect(client_id)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in heartbeat loop: {e}")


# Global connection manager instance
_manager: Optional[ConnectionManager] = None


def get_connection_manager() -> ConnectionManager:
    """Get the global connection manager instance."""
    global _manager
    if _manager is None:
        _manager = ConnectionManager()
    return _manager


async def init_websocket_manager() -> ConnectionManager:
    """Initialize and start the WebSocket manager."""
    manager = get_connection_manager()
    await manager.start()
    return manager


async def close_websocket_manager():
    """Stop and clean up the WebSocket manager."""
    global _manager
    if _manager:
        await _manager.stop()
        _manager = None
