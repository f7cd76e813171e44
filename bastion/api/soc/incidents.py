"""
BASTION - Incident Classification & Lifecycle
=============================================

Decides which audit entries become incidents, at what priority, and
which status transitions are legal.

Lifecycle:
    OPEN -> INVESTIGATING | ESCALATED | RESOLVED | FALSE_POSITIVE
    INVESTIGATING / ESCALATED -> any state
    RESOLVED, FALSE_POSITIVE -> terminal (never change again)

A terminal incident is never reopened; new evidence opens a new
incident instead.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy import case

from bastion.api.audit.events import (
    AuditAction,
    AuditResource,
    AuditStatus,
)
from bastion.api.db.models import AuditLog
from bastion.api.errors import ConflictError, ValidationError


class IncidentStatus(str, Enum):
    OPEN = "OPEN"
    INVESTIGATING = "INVESTIGATING"
    ESCALATED = "ESCALATED"
    RESOLVED = "RESOLVED"
    FALSE_POSITIVE = "FALSE_POSITIVE"


class Priority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class IncidentSource(str, Enum):
    AUTH_FAILURE = "AUTH_FAILURE"
    OPERATION_FAILURE = "OPERATION_FAILURE"
    ANOMALY = "ANOMALY"
    MANUAL = "MANUAL"


TERMINAL_STATES = frozenset({IncidentStatus.RESOLVED, IncidentStatus.FALSE_POSITIVE})
OPEN_STATES = frozenset({
    IncidentStatus.OPEN,
    IncidentStatus.INVESTIGATING,
    IncidentStatus.ESCALATED,
})

PRIORITY_ORDER = {
    Priority.LOW: 1,
    Priority.MEDIUM: 2,
    Priority.HIGH: 3,
    Priority.CRITICAL: 4,
}

# Priority of authentication/authorization failure actions
_AUTH_FAILURE_PRIORITY = {
    AuditAction.UNAUTHORIZED_ACCESS: Priority.HIGH,
    AuditAction.BLOCKED_IP: Priority.HIGH,
    AuditAction.CSRF_ATTEMPT: Priority.HIGH,
    AuditAction.AUTH_FAILED: Priority.MEDIUM,
    AuditAction.RATE_LIMIT_EXCEEDED: Priority.MEDIUM,
    AuditAction.LOGIN_FAILED: Priority.LOW,
    AuditAction.TOKEN_EXPIRED: Priority.LOW,
}

# Failures on these resources start at MEDIUM
_SENSITIVE_RESOURCES = frozenset({
    AuditResource.PERMISSION,
    AuditResource.ROLE,
    AuditResource.USER,
    AuditResource.API_KEY,
    AuditResource.SECURITY,
})


def parse_status(value: str) -> IncidentStatus:
    try:
        return IncidentStatus(value)
    except ValueError:
        raise ValidationError(
            f"Invalid incident status '{value}'",
            details={"allowed": [s.value for s in IncidentStatus]},
        )


def parse_priority(value: str) -> Priority:
    try:
        return Priority(value)
    except ValueError:
        raise ValidationError(
            f"Invalid priority '{value}'",
            details={"allowed": [p.value for p in Priority]},
        )


def is_terminal(status: Optional[str]) -> bool:
    return status is not None and IncidentStatus(status) in TERMINAL_STATES


def ensure_transition(current: Optional[str], target: IncidentStatus) -> None:
    """
    Validate a lifecycle transition.

    Raises:
        ConflictError: If the incident is already in a terminal state
    """
    if is_terminal(current):
        raise ConflictError(
            f"Incident is {current} and can no longer change status",
            details={"current_status": current, "requested_status": target.value},
        )


def max_priority(*priorities: Optional[Priority]) -> Optional[Priority]:
    present = [p for p in priorities if p is not None]
    if not present:
        return None
    return max(present, key=lambda p: PRIORITY_ORDER[p])


# ============================================================
# Classification
# ============================================================


@dataclass
class Classification:
    """Incident fields a new audit entry should start with."""

    priority: Priority
    source: IncidentSource
    status: IncidentStatus = IncidentStatus.OPEN


def classify(
    action: AuditAction,
    resource: AuditResource,
    status: AuditStatus,
    anomaly_severity: Optional[str] = None,
    actor_is_admin: bool = False,
    authenticated: bool = True,
) -> Optional[Classification]:
    """
    Decide whether an audit entry is an incident candidate.

    Candidates are failed or errored operations, authentication and
    authorization failures, and entries carrying a HIGH or CRITICAL
    anomaly signal. Anomaly-only candidates exclude admin actors, and
    unauthenticated actors qualify only at CRITICAL.
    """
    action = AuditAction(action)
    resource = AuditResource(resource)
    status = AuditStatus(status)
    anomaly = Priority(anomaly_severity) if anomaly_severity else None

    base: Optional[Classification] = None
    if action in _AUTH_FAILURE_PRIORITY:
        base = Classification(_AUTH_FAILURE_PRIORITY[action], IncidentSource.AUTH_FAILURE)
    elif status == AuditStatus.ERROR:
        base = Classification(Priority.MEDIUM, IncidentSource.OPERATION_FAILURE)
    elif status == AuditStatus.FAILURE:
        priority = Priority.MEDIUM if resource in _SENSITIVE_RESOURCES else Priority.LOW
        base = Classification(priority, IncidentSource.OPERATION_FAILURE)

    if base is not None:
        if anomaly is not None:
            base.priority = max_priority(base.priority, anomaly)
        return base

    if anomaly is None or PRIORITY_ORDER[anomaly] < PRIORITY_ORDER[Priority.HIGH]:
        return None
    if actor_is_admin:
        return None
    if not authenticated and anomaly != Priority.CRITICAL:
        return None

    return Classification(anomaly, IncidentSource.ANOMALY)


def priority_rank():
    """SQL expression ranking AuditLog.priority (higher is more urgent)."""
    return case(
        {p.value: rank for p, rank in PRIORITY_ORDER.items()},
        value=AuditLog.priority,
        else_=0,
    )
