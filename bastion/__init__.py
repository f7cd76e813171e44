"""
BASTION: Access control and security operations backend.

Components:
    - Permission store and resolver: direct, role, page and custom-mode grants
    - Access gate: IP blocklist, authentication, permission checks
    - Audit trail: fire-and-forget audit records with correlation ids
    - SOC: incident triage, anomaly detection, IP blocklist, live monitoring
"""

__version__ = "1.0.0"
