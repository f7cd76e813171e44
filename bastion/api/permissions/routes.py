"""
Permission Routes

Permission catalogue, page registry, and grant management for users
and roles. Every grant change is audited; nobody may change their own
grants (or those of their own role).
"""

from typing import List, Optional, Tuple
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from bastion.api.access.gate import deny, get_current_principal, require_permission
from bastion.api.access.presets import get_preset, list_presets
from bastion.api.access.registry import PAGE_REGISTRY, get_categories
from bastion.api.access.resolver import PermissionResolver
from bastion.api.access.store import (
    BundleResult,
    GrantOutcome,
    GrantResult,
    PermissionStore,
    Subject,
    SubjectKind,
)
from bastion.api.audit.context import RequestContext
from bastion.api.audit.events import (
    AuditAction,
    AuditOutcome,
    AuditResource,
    PermissionChangePayload,
)
from bastion.api.audit.recorder import AuditRecorder
from bastion.api.auth.principal import Principal
from bastion.api.db.models import Role, User
from bastion.api.db.session import get_db
from bastion.api.dependencies import (
    get_audit_recorder,
    get_permission_resolver,
    get_permission_store,
    get_request_context,
)
from bastion.api.errors import AppError, ConflictError, NotFoundError
from bastion.api.permissions.schemas import (
    BulkBundleResponse,
    BulkPageGrantRequest,
    BundleResponse,
    CustomModeRequest,
    EffectivePermission,
    GrantRequest,
    GrantResponse,
    PageGrantRequest,
    PagePermissionsResponse,
    PageRegistryResponse,
    PermissionCreate,
    PermissionListResponse,
    PermissionResponse,
    PresetApplyResponse,
    PresetListResponse,
    UserPermissionsResponse,
)


router = APIRouter()

SELF_MODIFICATION = "You cannot modify your own permissions"

can_read = require_permission("permissions", "read")
can_create = require_permission("permissions", "create")
can_update = require_permission("permissions", "update")


# ============================================================
# Helpers
# ============================================================


def _audit_resource(subject: Subject) -> AuditResource:
    return AuditResource.USER if subject.kind == SubjectKind.USER else AuditResource.ROLE


def _payload(subject: Subject, permissions: List[str], **fields) -> PermissionChangePayload:
    return PermissionChangePayload(
        subject_type=subject.kind.value,
        subject_id=str(subject.id),
        permissions=permissions,
        **fields,
    )


def _guard_self(
    subject: Subject,
    principal: Principal,
    context: RequestContext,
    recorder: AuditRecorder,
) -> None:
    """Reject changes to the caller's own grants or to the caller's role."""
    if subject.kind == SubjectKind.USER:
        is_self = subject.id == principal.id
    else:
        is_self = principal.role_id is not None and subject.id == principal.role_id

    if is_self:
        raise deny(
            context,
            recorder,
            "self_modification",
            message=SELF_MODIFICATION,
            resource=_audit_resource(subject),
        )


def _record_failure(
    context: RequestContext,
    recorder: AuditRecorder,
    action: AuditAction,
    subject: Subject,
    error: AppError,
    payload: PermissionChangePayload,
) -> None:
    recorder.record(
        context,
        action,
        _audit_resource(subject),
        AuditOutcome.failure(error.message, payload=payload, resource_id=subject.id),
    )


def _grant_response(subject: Subject, result: GrantResult) -> GrantResponse:
    return GrantResponse(
        subject_type=subject.kind.value,
        subject_id=str(subject.id),
        permission=PermissionResponse.model_validate(result.grant.permission),
        outcome=result.outcome.value,
        is_active=result.grant.is_active,
        granted_by=result.grant.granted_by,
        granted_at=result.grant.granted_at,
    )


def _bundle_response(result: BundleResult) -> BundleResponse:
    return BundleResponse(
        page_permission=result.permission.name,
        api_permissions=[p.name for p in result.api_permissions],
        outcomes={name: outcome.value for name, outcome in result.outcomes.items()},
    )


def _page_items(data: BulkPageGrantRequest) -> List[Tuple[str, str]]:
    return [(item.page, item.action) for item in data.permissions]


async def _grant(
    subject: Subject,
    data: GrantRequest,
    principal: Principal,
    store: PermissionStore,
    context: RequestContext,
    recorder: AuditRecorder,
) -> GrantResponse:
    _guard_self(subject, principal, context, recorder)

    try:
        result = await store.grant(subject, data.permission_id, granted_by=principal.id)
        if result.outcome == GrantOutcome.UNCHANGED:
            raise ConflictError(
                f"Permission '{result.grant.permission.name}' is already granted",
                details={"permission_id": data.permission_id},
            )
    except AppError as e:
        _record_failure(
            context, recorder, AuditAction.GRANT, subject, e,
            _payload(subject, [], outcome=e.kind.value),
        )
        raise

    await store.db.commit()
    recorder.record(
        context,
        AuditAction.GRANT,
        _audit_resource(subject),
        AuditOutcome.success(
            resource_id=subject.id,
            payload=_payload(subject, [result.grant.permission.name], outcome=result.outcome.value),
        ),
    )
    return _grant_response(subject, result)


async def _revoke(
    subject: Subject,
    data: GrantRequest,
    principal: Principal,
    store: PermissionStore,
    context: RequestContext,
    recorder: AuditRecorder,
) -> GrantResponse:
    _guard_self(subject, principal, context, recorder)

    try:
        result = await store.revoke(subject, data.permission_id)
    except AppError as e:
        _record_failure(
            context, recorder, AuditAction.REVOKE, subject, e,
            _payload(subject, [], outcome=e.kind.value),
        )
        raise

    await store.db.commit()
    recorder.record(
        context,
        AuditAction.REVOKE,
        _audit_resource(subject),
        AuditOutcome.success(
            resource_id=subject.id,
            payload=_payload(subject, [result.grant.permission.name], outcome=result.outcome.value),
        ),
    )
    return _grant_response(subject, result)


async def _page_change(
    grant: bool,
    subject: Subject,
    data: PageGrantRequest,
    principal: Principal,
    store: PermissionStore,
    context: RequestContext,
    recorder: AuditRecorder,
) -> BundleResponse:
    _guard_self(subject, principal, context, recorder)
    action = AuditAction.GRANT if grant else AuditAction.REVOKE

    try:
        if grant:
            result = await store.grant_page(subject, data.page, data.action, granted_by=principal.id)
        else:
            result = await store.revoke_page(subject, data.page, data.action)
    except AppError as e:
        _record_failure(
            context, recorder, action, subject, e,
            _payload(subject, [], page=data.page, page_action=data.action, outcome=e.kind.value),
        )
        raise

    await store.db.commit()
    recorder.record(
        context,
        action,
        _audit_resource(subject),
        AuditOutcome.success(
            resource_id=subject.id,
            payload=_payload(
                subject,
                result.permission_names,
                page=data.page,
                page_action=data.action,
                outcome=result.outcomes[result.permission.name].value,
            ),
        ),
    )
    return _bundle_response(result)


async def _bulk_page_grant(
    subject: Subject,
    items: List[Tuple[str, str]],
    principal: Principal,
    store: PermissionStore,
    context: RequestContext,
    recorder: AuditRecorder,
    preset: Optional[str] = None,
) -> BulkBundleResponse:
    _guard_self(subject, principal, context, recorder)

    try:
        results = await store.bulk_grant_pages(subject, items, granted_by=principal.id)
    except AppError as e:
        _record_failure(
            context, recorder, AuditAction.GRANT, subject, e,
            _payload(subject, [], outcome=e.kind.value, preset=preset),
        )
        raise

    names: List[str] = []
    for result in results:
        names.extend(n for n in result.permission_names if n not in names)

    await store.db.commit()
    recorder.record(
        context,
        AuditAction.GRANT,
        _audit_resource(subject),
        AuditOutcome.success(
            resource_id=subject.id,
            payload=_payload(subject, names, outcome="PRESET" if preset else "BULK", preset=preset),
        ),
    )
    return BulkBundleResponse(results=[_bundle_response(r) for r in results])


async def _mode_change(
    grant: bool,
    subject: Subject,
    data: CustomModeRequest,
    principal: Principal,
    store: PermissionStore,
    context: RequestContext,
    recorder: AuditRecorder,
) -> BundleResponse:
    _guard_self(subject, principal, context, recorder)
    action = AuditAction.GRANT if grant else AuditAction.REVOKE

    try:
        if grant:
            result = await store.grant_custom_mode(subject, data.page, data.mode_id, granted_by=principal.id)
        else:
            result = await store.revoke_custom_mode(subject, data.page, data.mode_id)
    except AppError as e:
        _record_failure(
            context, recorder, action, subject, e,
            _payload(subject, [], page=data.page, mode_id=data.mode_id, outcome=e.kind.value),
        )
        raise

    await store.db.commit()
    recorder.record(
        context,
        action,
        _audit_resource(subject),
        AuditOutcome.success(
            resource_id=subject.id,
            payload=_payload(
                subject,
                result.permission_names,
                page=data.page,
                mode_id=data.mode_id,
                outcome=result.outcomes[result.permission.name].value,
            ),
        ),
    )
    return _bundle_response(result)


async def _load_user(db: AsyncSession, user_id: UUID) -> User:
    user = await db.get(User, user_id)
    if user is None:
        raise NotFoundError("User")
    return user


async def _load_role(db: AsyncSession, role_id: int) -> Role:
    role = await db.get(Role, role_id)
    if role is None:
        raise NotFoundError("Role")
    return role


# ============================================================
# Catalogue
# ============================================================


@router.get("/", response_model=PermissionListResponse, summary="List permissions")
async def list_permissions(
    resource: Optional[str] = Query(None, max_length=100),
    _: Principal = Depends(can_read),
    store: PermissionStore = Depends(get_permission_store),
) -> PermissionListResponse:
    permissions = await store.list_permissions(resource)
    return PermissionListResponse(
        permissions=[PermissionResponse.model_validate(p) for p in permissions],
        total=len(permissions),
    )


@router.post(
    "/",
    response_model=PermissionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a permission",
)
async def create_permission(
    data: PermissionCreate,
    principal: Principal = Depends(can_create),
    store: PermissionStore = Depends(get_permission_store),
    context: RequestContext = Depends(get_request_context),
    recorder: AuditRecorder = Depends(get_audit_recorder),
) -> PermissionResponse:
    """Create a ``resource:action`` permission. Duplicate names are rejected with 409."""
    try:
        permission = await store.create_permission(data.resource, data.action, data.description)
    except AppError as e:
        recorder.record(
            context,
            AuditAction.CREATE,
            AuditResource.PERMISSION,
            AuditOutcome.failure(e.message, name=f"{data.resource}:{data.action}"),
        )
        raise

    await store.db.commit()
    recorder.record(
        context,
        AuditAction.CREATE,
        AuditResource.PERMISSION,
        AuditOutcome.success(resource_id=permission.id, name=permission.name),
    )
    return PermissionResponse.model_validate(permission)


@router.get("/pages", response_model=PageRegistryResponse, summary="Page registry")
async def list_pages(
    _: Principal = Depends(get_current_principal),
) -> PageRegistryResponse:
    return PageRegistryResponse(
        pages=[definition.to_dict() for definition in PAGE_REGISTRY.values()],
        categories=get_categories(),
    )


@router.get("/presets", response_model=PresetListResponse, summary="Permission presets")
async def get_presets(
    _: Principal = Depends(get_current_principal),
) -> PresetListResponse:
    return PresetListResponse(presets=[preset.to_dict() for preset in list_presets()])


@router.get("/my-permissions", response_model=UserPermissionsResponse, summary="Own effective permissions")
async def my_permissions(
    principal: Principal = Depends(get_current_principal),
    resolver: PermissionResolver = Depends(get_permission_resolver),
) -> UserPermissionsResponse:
    entries = await resolver.effective_permissions(principal)
    return UserPermissionsResponse(
        user_id=principal.id,
        is_admin=principal.is_admin,
        role_id=principal.role_id,
        permissions=[EffectivePermission(**e) for e in entries],
    )


@router.get("/my-page-permissions", response_model=PagePermissionsResponse, summary="Own page access")
async def my_page_permissions(
    principal: Principal = Depends(get_current_principal),
    resolver: PermissionResolver = Depends(get_permission_resolver),
) -> PagePermissionsResponse:
    return PagePermissionsResponse(
        subject_type=SubjectKind.USER.value,
        subject_id=str(principal.id),
        pages=await resolver.page_matrix(principal),
    )


# ============================================================
# Users
# ============================================================


@router.get("/users/{user_id}", response_model=UserPermissionsResponse, summary="User's effective permissions")
async def get_user_permissions(
    user_id: UUID,
    _: Principal = Depends(can_read),
    db: AsyncSession = Depends(get_db),
    resolver: PermissionResolver = Depends(get_permission_resolver),
) -> UserPermissionsResponse:
    user = await _load_user(db, user_id)
    entries = await resolver.effective_permissions(user)
    return UserPermissionsResponse(
        user_id=user.id,
        is_admin=user.is_admin,
        role_id=user.role_id,
        permissions=[EffectivePermission(**e) for e in entries],
    )


@router.get(
    "/users/{user_id}/page-permissions",
    response_model=PagePermissionsResponse,
    summary="User's page access",
)
async def get_user_page_permissions(
    user_id: UUID,
    _: Principal = Depends(can_read),
    db: AsyncSession = Depends(get_db),
    resolver: PermissionResolver = Depends(get_permission_resolver),
) -> PagePermissionsResponse:
    user = await _load_user(db, user_id)
    return PagePermissionsResponse(
        subject_type=SubjectKind.USER.value,
        subject_id=str(user.id),
        pages=await resolver.page_matrix(user),
    )


@router.post("/users/{user_id}/grant", response_model=GrantResponse, summary="Grant a permission to a user")
async def grant_user_permission(
    user_id: UUID,
    data: GrantRequest,
    principal: Principal = Depends(can_update),
    store: PermissionStore = Depends(get_permission_store),
    context: RequestContext = Depends(get_request_context),
    recorder: AuditRecorder = Depends(get_audit_recorder),
) -> GrantResponse:
    """
    Grant one permission. A revoked grant is reactivated.

    409 when the grant is already active.
    """
    return await _grant(Subject.user(user_id), data, principal, store, context, recorder)


@router.post("/users/{user_id}/revoke", response_model=GrantResponse, summary="Revoke a permission from a user")
async def revoke_user_permission(
    user_id: UUID,
    data: GrantRequest,
    principal: Principal = Depends(can_update),
    store: PermissionStore = Depends(get_permission_store),
    context: RequestContext = Depends(get_request_context),
    recorder: AuditRecorder = Depends(get_audit_recorder),
) -> GrantResponse:
    return await _revoke(Subject.user(user_id), data, principal, store, context, recorder)


@router.post("/users/{user_id}/grant-page", response_model=BundleResponse, summary="Grant page access to a user")
async def grant_user_page(
    user_id: UUID,
    data: PageGrantRequest,
    principal: Principal = Depends(can_update),
    store: PermissionStore = Depends(get_permission_store),
    context: RequestContext = Depends(get_request_context),
    recorder: AuditRecorder = Depends(get_audit_recorder),
) -> BundleResponse:
    return await _page_change(True, Subject.user(user_id), data, principal, store, context, recorder)


@router.post("/users/{user_id}/revoke-page", response_model=BundleResponse, summary="Revoke page access from a user")
async def revoke_user_page(
    user_id: UUID,
    data: PageGrantRequest,
    principal: Principal = Depends(can_update),
    store: PermissionStore = Depends(get_permission_store),
    context: RequestContext = Depends(get_request_context),
    recorder: AuditRecorder = Depends(get_audit_recorder),
) -> BundleResponse:
    return await _page_change(False, Subject.user(user_id), data, principal, store, context, recorder)


@router.post(
    "/users/{user_id}/bulk-grant-page",
    response_model=BulkBundleResponse,
    summary="Grant several pages to a user",
)
async def bulk_grant_user_pages(
    user_id: UUID,
    data: BulkPageGrantRequest,
    principal: Principal = Depends(can_update),
    store: PermissionStore = Depends(get_permission_store),
    context: RequestContext = Depends(get_request_context),
    recorder: AuditRecorder = Depends(get_audit_recorder),
) -> BulkBundleResponse:
    return await _bulk_page_grant(Subject.user(user_id), _page_items(data), principal, store, context, recorder)


@router.post(
    "/users/{user_id}/apply-preset/{preset_id}",
    response_model=PresetApplyResponse,
    summary="Apply a permission preset to a user",
)
async def apply_user_preset(
    user_id: UUID,
    preset_id: str,
    principal: Principal = Depends(can_update),
    store: PermissionStore = Depends(get_permission_store),
    context: RequestContext = Depends(get_request_context),
    recorder: AuditRecorder = Depends(get_audit_recorder),
) -> PresetApplyResponse:
    """Grant every page in the preset; any failing page aborts the whole preset."""
    preset = get_preset(preset_id)
    result = await _bulk_page_grant(
        Subject.user(user_id), list(preset.pages), principal, store, context, recorder, preset=preset.preset_id
    )
    return PresetApplyResponse(preset_id=preset.preset_id, results=result.results)


@router.post(
    "/users/{user_id}/grant-custom-mode",
    response_model=BundleResponse,
    summary="Grant a custom mode to a user",
)
async def grant_user_custom_mode(
    user_id: UUID,
    data: CustomModeRequest,
    principal: Principal = Depends(can_update),
    store: PermissionStore = Depends(get_permission_store),
    context: RequestContext = Depends(get_request_context),
    recorder: AuditRecorder = Depends(get_audit_recorder),
) -> BundleResponse:
    return await _mode_change(True, Subject.user(user_id), data, principal, store, context, recorder)


@router.post(
    "/users/{user_id}/revoke-custom-mode",
    response_model=BundleResponse,
    summary="Revoke a custom mode from a user",
)
async def revoke_user_custom_mode(
    user_id: UUID,
    data: CustomModeRequest,
    principal: Principal = Depends(can_update),
    store: PermissionStore = Depends(get_permission_store),
    context: RequestContext = Depends(get_request_context),
    recorder: AuditRecorder = Depends(get_audit_recorder),
) -> BundleResponse:
    return await _mode_change(False, Subject.user(user_id), data, principal, store, context, recorder)


# ============================================================
# Roles
# ============================================================


@router.get(
    "/roles/{role_id}/page-permissions",
    response_model=PagePermissionsResponse,
    summary="Role's page access",
)
async def get_role_page_permissions(
    role_id: int,
    _: Principal = Depends(can_read),
    db: AsyncSession = Depends(get_db),
    resolver: PermissionResolver = Depends(get_permission_resolver),
) -> PagePermissionsResponse:
    role = await _load_role(db, role_id)
    return PagePermissionsResponse(
        subject_type=SubjectKind.ROLE.value,
        subject_id=str(role.id),
        pages=await resolver.role_page_matrix(role.id),
    )


@router.post("/roles/{role_id}/grant", response_model=GrantResponse, summary="Grant a permission to a role")
async def grant_role_permission(
    role_id: int,
    data: GrantRequest,
    principal: Principal = Depends(can_update),
    store: PermissionStore = Depends(get_permission_store),
    context: RequestContext = Depends(get_request_context),
    recorder: AuditRecorder = Depends(get_audit_recorder),
) -> GrantResponse:
    return await _grant(Subject.role(role_id), data, principal, store, context, recorder)


@router.post("/roles/{role_id}/revoke", response_model=GrantResponse, summary="Revoke a permission from a role")
async def revoke_role_permission(
    role_id: int,
    data: GrantRequest,
    principal: Principal = Depends(can_update),
    store: PermissionStore = Depends(get_permission_store),
    context: RequestContext = Depends(get_request_context),
    recorder: AuditRecorder = Depends(get_audit_recorder),
) -> GrantResponse:
    return await _revoke(Subject.role(role_id), data, principal, store, context, recorder)


@router.post("/roles/{role_id}/grant-page", response_model=BundleResponse, summary="Grant page access to a role")
async def grant_role_page(
    role_id: int,
    data: PageGrantRequest,
    principal: Principal = Depends(can_update),
    store: PermissionStore = Depends(get_permission_store),
    context: RequestContext = Depends(get_request_context),
    recorder: AuditRecorder = Depends(get_audit_recorder),
) -> BundleResponse:
    return await _page_change(True, Subject.role(role_id), data, principal, store, context, recorder)


@router.post("/roles/{role_id}/revoke-page", response_model=BundleResponse, summary="Revoke page access from a role")
async def revoke_role_page(
    role_id: int,
    data: PageGrantRequest,
    principal: Principal = Depends(can_update),
    store: PermissionStore = Depends(get_permission_store),
    context: RequestContext = Depends(get_request_context),
    recorder: AuditRecorder = Depends(get_audit_recorder),
) -> BundleResponse:
    return await _page_change(False, Subject.role(role_id), data, principal, store, context, recorder)


@router.post(
    "/roles/{role_id}/bulk-grant-page",
    response_model=BulkBundleResponse,
    summary="Grant several pages to a role",
)
async def bulk_grant_role_pages(
    role_id: int,
    data: BulkPageGrantRequest,
    principal: Principal = Depends(can_update),
    store: PermissionStore = Depends(get_permission_store),
    context: RequestContext = Depends(get_request_context),
    recorder: AuditRecorder = Depends(get_audit_recorder),
) -> BulkBundleResponse:
    return await _bulk_page_grant(Subject.role(role_id), _page_items(data), principal, store, context, recorder)


@router.post(
    "/roles/{role_id}/apply-preset/{preset_id}",
    response_model=PresetApplyResponse,
    summary="Apply a permission preset to a role",
)
async def apply_role_preset(
    role_id: int,
    preset_id: str,
    principal: Principal = Depends(can_update),
    store: PermissionStore = Depends(get_permission_store),
    context: RequestContext = Depends(get_request_context),
    recorder: AuditRecorder = Depends(get_audit_recorder),
) -> PresetApplyResponse:
    preset = get_preset(preset_id)
    result = await _bulk_page_grant(
        Subject.role(role_id), list(preset.pages), principal, store, context, recorder, preset=preset.preset_id
    )
    return PresetApplyResponse(preset_id=preset.preset_id, results=result.results)


@router.post(
    "/roles/{role_id}/grant-custom-mode",
    response_model=BundleResponse,
    summary="Grant a custom mode to a role",
)
async def grant_role_custom_mode(
    role_id: int,
    data: CustomModeRequest,
    principal: Principal = Depends(can_update),
    store: PermissionStore = Depends(get_permission_store),
    context: RequestContext = Depends(get_request_context),
    recorder: AuditRecorder = Depends(get_audit_recorder),
) -> BundleResponse:
    return await _mode_change(True, Subject.role(role_id), data, principal, store, context, recorder)


@router.post(
    "/roles/{role_id}/revoke-custom-mode",
    response_model=BundleResponse,
    summary="Revoke a custom mode from a role",
)
async def revoke_role_custom_mode(
    role_id: int,
    data: CustomModeRequest,
    principal: Principal = Depends(can_update),
    store: PermissionStore = Depends(get_permission_store),
    context: RequestContext = Depends(get_request_context),
    recorder: AuditRecorder = Depends(get_audit_recorder),
) -> BundleResponse:
    return await _mode_change(False, Subject.role(role_id), data, principal, store, context, recorder)
