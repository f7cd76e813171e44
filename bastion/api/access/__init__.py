"""
BASTION - Access Module

Permission storage, resolution and request gating.

Components:
- registry.py: Page registry and page/mode permission naming
- resolver.py: Effective permission resolution
- store.py: Permission catalogue and grants
- gate.py: FastAPI dependencies enforcing blocklist, authentication and permissions
"""

from bastion.api.access.registry import PAGE_REGISTRY, get_page
from bastion.api.access.resolver import PermissionResolver

__all__ = [
    "PAGE_REGISTRY",
    "get_page",
    "PermissionResolver",
]
