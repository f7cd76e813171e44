"""
BASTION - Security Operations Module

Components:
- incidents.py: Incident states, priorities and classification
- anomaly.py: Anomaly rules evaluated on new audit entries
- blocklist.py: IP blocklist
- trusted.py: Trusted users and addresses
- service.py: Audit log review and incident triage
"""

from bastion.api.soc.incidents import (
    IncidentSource,
    IncidentStatus,
    Priority,
    classify,
    ensure_transition,
)

__all__ = [
    "IncidentSource",
    "IncidentStatus",
    "Priority",
    "classify",
    "ensure_transition",
]
