"""
BASTION - Access Gate
=====================

FastAPI dependencies guarding every privileged route, in order:

1. IP blocklist. Trusted addresses are exempt, and on a blocked address
   trusted accounts still pass. A failing lookup lets the request through.
2. Authentication (bearer JWT or ``X-API-Key``).
3. Authorization through the PermissionResolver.

Each rejection is recorded by the audit recorder. Blocked addresses and
permission denials return the same generic 403 body.

Usage:
    @router.get("/", dependencies=[Depends(require_permission("permissions", "read"))])
    async def list_permissions(...): ...

    @router.post("/x")
    async def x(principal: Principal = Depends(require_admin)): ...
"""

import logging
from typing import Optional

from fastapi import Depends
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bastion.api.access.registry import PageAction, parse_page_action
from bastion.api.access.resolver import PermissionResolver, scope_name
from bastion.api.audit.context import RequestContext
from bastion.api.audit.events import (
    AccessDeniedPayload,
    AuditAction,
    AuditOutcome,
    AuditResource,
    AuthFailurePayload,
)
from bastion.api.audit.recorder import AuditRecorder
from bastion.api.auth.principal import AuthenticationFailed, Principal, authenticate
from bastion.api.db.session import get_db
from bastion.api.dependencies import get_audit_recorder, get_request_context
from bastion.api.errors import ForbiddenError
from bastion.api.soc.blocklist import IPBlocklist
from bastion.api.soc.incidents import Priority
from bastion.api.soc.trusted import TrustedUserRegistry

logger = logging.getLogger(__name__)

ACCESS_DENIED = "Access denied"

bearer_scheme = HTTPBearer(auto_error=False)
api_key_scheme = APIKeyHeader(name="X-API-Key", auto_error=False)


# ============================================================
# IP blocklist
# ============================================================


async def is_caller_blocked(
    db: AsyncSession,
    ip: Optional[str],
    bearer_token: Optional[str] = None,
    api_key: Optional[str] = None,
) -> bool:
    """
    Whether ``ip`` is effectively blocked for this caller.

    Trusted addresses are exempt. On a blocked address any presented
    credentials are checked quietly so trusted accounts still get
    through. A failing lookup counts as not blocked.
    """
    if not ip:
        return False

    try:
        registry = TrustedUserRegistry(db)
        if await registry.is_trusted_ip(ip):
            return False
        if not await IPBlocklist(db).is_blocked(ip):
            return False
        if not (bearer_token or api_key):
            return True

        try:
            principal = await authenticate(db, bearer_token=bearer_token, api_key=api_key)
        except AuthenticationFailed:
            return True
        return not await registry.is_trusted_user(principal.id)
    except SQLAlchemyError as e:
        logger.error(f"Blocklist lookup failed for {ip}, allowing request: {e}")
        await db.rollback()
        return False


async def enforce_ip_blocklist(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    api_key: Optional[str] = Depends(api_key_scheme),
    context: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
    recorder: AuditRecorder = Depends(get_audit_recorder),
) -> None:
    """
    Reject requests from effectively blocked addresses.

    Raises:
        ForbiddenError: The caller's address is blocked
    """
    ip = context.ip_address
    bearer_token = credentials.credentials if credentials else None
    if not await is_caller_blocked(db, ip, bearer_token=bearer_token, api_key=api_key):
        return

    logger.warning(f"Rejected request from blocked IP {ip} to {context.http_path}")
    recorder.record(
        context,
        AuditAction.BLOCKED_IP,
        AuditResource.SECURITY,
        AuditOutcome.failure(
            "Request from blocked IP address",
            payload=AccessDeniedPayload(reason="blocked_ip"),
            resource_id=ip,
        ),
    )
    raise ForbiddenError(ACCESS_DENIED)


# ============================================================
# Authentication
# ============================================================


async def get_current_principal(
    _: None = Depends(enforce_ip_blocklist),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    api_key: Optional[str] = Depends(api_key_scheme),
    context: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
    recorder: AuditRecorder = Depends(get_audit_recorder),
) -> Principal:
    """
    Authenticate the request and attach the principal to its context.

    Raises:
        AuthenticationFailed: Missing, invalid or expired credentials
    """
    try:
        principal = await authenticate(
            db,
            bearer_token=credentials.credentials if credentials else None,
            api_key=api_key,
        )
    except AuthenticationFailed as e:
        recorder.record(
            context,
            AuditAction.AUTH_FAILED,
            AuditResource.AUTH,
            AuditOutcome.failure(
                e.message,
                payload=AuthFailurePayload(attempted_method=e.attempted_method, reason=e.reason),
            ),
        )
        raise

    context.principal = principal
    return principal


# ============================================================
# Authorization
# ============================================================


def deny(
    context: RequestContext,
    recorder: AuditRecorder,
    reason: str,
    required: Optional[str] = None,
    message: str = ACCESS_DENIED,
    resource: AuditResource = AuditResource.SECURITY,
) -> ForbiddenError:
    """Record an UNAUTHORIZED_ACCESS entry and build the error to raise."""
    recorder.record(
        context,
        AuditAction.UNAUTHORIZED_ACCESS,
        resource,
        AuditOutcome.failure(
            message,
            payload=AccessDeniedPayload(reason=reason, required=required),
            severity=Priority.HIGH.value,
        ),
    )
    return ForbiddenError(message)


async def require_admin(
    principal: Principal = Depends(get_current_principal),
    context: RequestContext = Depends(get_request_context),
    recorder: AuditRecorder = Depends(get_audit_recorder),
) -> Principal:
    if not principal.is_admin:
        raise deny(context, recorder, "admin_required", required="admin")
    return principal


def require_permission(resource: str, action: str):
    """Dependency factory: the principal must hold ``resource:action``."""
    required = scope_name(resource, action)

    async def dependency(
        principal: Principal = Depends(get_current_principal),
        context: RequestContext = Depends(get_request_context),
        db: AsyncSession = Depends(get_db),
        recorder: AuditRecorder = Depends(get_audit_recorder),
    ) -> Principal:
        if not await PermissionResolver(db).resolve(principal, resource, action):
            logger.info(f"{principal.email} denied {required} on {context.http_path}")
            raise deny(context, recorder, "permission", required=required)
        return principal

    dependency.__name__ = f"require_{resource}_{action}".replace("-", "_")
    return dependency


def require_page(page: str, action: str = PageAction.VIEW.value):
    """Dependency factory: the principal must have view/edit access to a page."""
    page_action = parse_page_action(action)
    required = f"page:{page}:{page_action.value}"

    async def dependency(
        principal: Principal = Depends(get_current_principal),
        context: RequestContext = Depends(get_request_context),
        db: AsyncSession = Depends(get_db),
        recorder: AuditRecorder = Depends(get_audit_recorder),
    ) -> Principal:
        if not await PermissionResolver(db).resolve_page(principal, page, page_action):
            raise deny(context, recorder, "permission", required=required)
        return principal

    dependency.__name__ = f"require_page_{page}_{page_action.value}".replace("-", "_")
    return dependency
