"""
WebSocket Event Types

Defines all event types for real-time SOC monitoring.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """WebSocket event types."""

    # Connection events
    CONNECTED = "connected"
    ERROR = "error"
    PING = "ping"
    PONG = "pong"

    # Room membership
    JOINED_ROOM = "joined-room"
    LEFT_ROOM = "left-room"

    # SOC events
    SECURITY_EVENT = "security-event"
    AUDIT_LOG_UPDATE = "audit-log-update"
    INCIDENT_UPDATE = "incident-update"


class Severity(str, Enum):
    """Alert severity levels."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BaseEvent(BaseModel):
    """Base event structure."""

    type: EventType
    timestamp: datetime = Field(default_factory=_utcnow)
    room: Optional[str] = None


class ConnectionEvent(BaseEvent):
    """Connection status event."""

    type: EventType = EventType.CONNECTED
    client_id: str
    message: str


class ErrorEvent(BaseEvent):
    """Error event."""

    type: EventType = EventType.ERROR
    code: str
    message: str
    details: Optional[Dict[str, Any]] = None


class AuditLogEvent(BaseEvent):
    """An audit entry was created or its pin/incident fields changed."""

    type: EventType = EventType.AUDIT_LOG_UPDATE
    # created, pinned, unpinned, incident
    change: str
    log: Dict[str, Any]


class IncidentEvent(BaseEvent):
    """An incident was opened or moved through its lifecycle."""

    type: EventType = EventType.INCIDENT_UPDATE
    # opened, updated, bulk_false_positive, cleanup
    change: str
    incident: Dict[str, Any]


class SecurityEvent(BaseEvent):
    """Real-time alert for a new incident candidate."""

    type: EventType = EventType.SECURITY_EVENT
    severity: Severity
    action: str
    message: str
    log: Dict[str, Any]
