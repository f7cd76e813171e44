"""
SOC Broadcaster

Pushes audit, incident and security events to the SOC monitoring room.

Publishing never blocks the caller: each event is delivered by its own
task and delivery failures are only logged. Clients that miss an event
recover by polling the audit log endpoints.
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Set

from bastion.api.config import settings
from bastion.api.websocket.events import (
    AuditLogEvent,
    BaseEvent,
    IncidentEvent,
    SecurityEvent,
    Severity,
)
from bastion.api.websocket.manager import ConnectionManager, get_connection_manager

logger = logging.getLogger(__name__)


class SocBroadcaster:
    """Fire-and-forget publisher for one monitoring room."""

    def __init__(self, manager: Optional[ConnectionManager] = None, room: Optional[str] = None):
        self._manager = manager
        self.room = room or settings.SOC_MONITORING_ROOM
        self._tasks: Set[asyncio.Task] = set()

    @property
    def manager(self) -> ConnectionManager:
        """The injected manager, else the current global one (replaced on restart)."""
        if self._manager is not None:
            return self._manager
        return get_connection_manager()

    def publish(self, event: BaseEvent) -> None:
        """Schedule delivery of an event to the room and return immediately."""
        event.room = self.room
        try:
            task = asyncio.get_running_loop().create_task(self._deliver(event))
        except RuntimeError:
            logger.warning(f"No running loop, dropping {event.type.value} event")
            return

        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, event: BaseEvent) -> None:
        try:
            await self.manager.broadcast_to_room(self.room, event)
        except Exception as e:
            logger.error(f"Failed to broadcast {event.type.value}: {e}")

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown, tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    # ==================== Event helpers ====================

    def audit_log_update(self, log: Dict[str, Any], change: str = "created") -> None:
        self.publish(AuditLogEvent(change=change, log=log))

    def incident_update(self, incident: Dict[str, Any], change: str = "updated") -> None:
        self.publish(IncidentEvent(change=change, incident=incident))

    def security_event(
        self,
        log: Dict[str, Any],
        severity: str,
        message: Optional[str] = None,
    ) -> None:
        action = log.get("action", "")
        self.publish(
            SecurityEvent(
                severity=Severity(severity),
                action=action,
                message=message or f"{action} on {log.get('resource', '')}",
                log=log,
            )
        )
