"""
BASTION - Audit Module

Request context, audit vocabulary and the out-of-band audit recorder.

Components:
- context.py: Per-request context and correlation ids
- events.py: Actions, resources, typed payloads and auto-pin rules
- middleware.py: Request context middleware
- recorder.py: Fire-and-forget audit writer
"""

from bastion.api.audit.context import (
    RequestContext,
    configure_logging,
    current_context,
    get_correlation_id,
)
from bastion.api.audit.events import (
    AuditAction,
    AuditOutcome,
    AuditResource,
    AuditStatus,
    AuthMethod,
)

__all__ = [
    # Context
    "RequestContext",
    "configure_logging",
    "current_context",
    "get_correlation_id",

    # Events
    "AuditAction",
    "AuditOutcome",
    "AuditResource",
    "AuditStatus",
    "AuthMethod",
]
