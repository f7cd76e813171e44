"""
FastAPI Dependencies

Common dependencies for dependency injection. Application-owned
services (audit recorder, broadcaster, metrics, rate limiter) live on
``app.state`` and are injected from there, so tests can swap them.
"""

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from bastion.api.access.resolver import PermissionResolver
from bastion.api.access.store import PermissionStore
from bastion.api.audit.context import RequestContext
from bastion.api.audit.middleware import build_context
from bastion.api.audit.recorder import AuditRecorder
from bastion.api.db.session import get_db
from bastion.api.services.metrics import RequestMetrics
from bastion.api.services.rate_limit import SlidingWindowRateLimiter
from bastion.api.soc.blocklist import IPBlocklist
from bastion.api.soc.service import SocService
from bastion.api.soc.trusted import TrustedUserRegistry
from bastion.api.websocket.broadcaster import SocBroadcaster


def get_request_context(request: Request) -> RequestContext:
    """The context built by RequestContextMiddleware (or a fresh one)."""
    context = getattr(request.state, "context", None)
    if context is None:
        context = build_context(request, request.method)
        request.state.context = context
    return context


def get_audit_recorder(request: Request) -> AuditRecorder:
    return request.app.state.audit_recorder


def get_broadcaster(request: Request) -> SocBroadcaster:
    return request.app.state.broadcaster


def get_metrics(request: Request) -> RequestMetrics:
    return request.app.state.metrics


def get_login_rate_limiter(request: Request) -> SlidingWindowRateLimiter:
    return request.app.state.login_rate_limiter


# ==================== Services ====================


def get_permission_store(db: AsyncSession = Depends(get_db)) -> PermissionStore:
    return PermissionStore(db)


def get_permission_resolver(db: AsyncSession = Depends(get_db)) -> PermissionResolver:
    return PermissionResolver(db)


def get_soc_service(db: AsyncSession = Depends(get_db)) -> SocService:
    return SocService(db)


def get_blocklist(db: AsyncSession = Depends(get_db)) -> IPBlocklist:
    return IPBlocklist(db)


def get_trusted_users(db: AsyncSession = Depends(get_db)) -> TrustedUserRegistry:
    return TrustedUserRegistry(db)
