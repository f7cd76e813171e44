"""
BASTION - Permission Store

Persistence of permissions and of their grants to users and roles.

Grant rows are unique per (subject, permission) and are never deleted:
revocation clears ``is_active`` and re-granting reactivates the same
row. Concurrent grants converge through ``INSERT ... ON CONFLICT DO
NOTHING`` followed by a re-read.

Page and custom-mode grants are bundles: the page-level permission plus
the concrete API permissions behind it. All writes only flush; the
request's unit of work commits or rolls back the bundle as a whole.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from bastion.api.access.registry import (
    ApiPermission,
    PageAction,
    api_permissions_for_mode,
    api_permissions_for_page,
    get_mode,
    get_page,
    mode_permission_name,
    page_permission_name,
    parse_page_action,
)
from bastion.api.db.models import (
    Permission,
    Role,
    RolePermission,
    User,
    UserPermission,
)
from bastion.api.errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

_DIALECT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


# ============================================================
# Types
# ============================================================


class SubjectKind(str, Enum):
    USER = "user"
    ROLE = "role"


@dataclass(frozen=True)
class Subject:
    """The grantee: a user (UUID) or a role (int)."""

    kind: SubjectKind
    id: Union[UUID, int]

    @classmethod
    def user(cls, user_id: UUID) -> "Subject":
        return cls(SubjectKind.USER, user_id)

    @classmethod
    def role(cls, role_id: int) -> "Subject":
        return cls(SubjectKind.ROLE, role_id)


class GrantOutcome(str, Enum):
    CREATED = "CREATED"
    REACTIVATED = "REACTIVATED"
    UNCHANGED = "UNCHANGED"
    REVOKED = "REVOKED"
    # Kept active because another active bundle of the subject covers it
    RETAINED = "RETAINED"
    # Nothing to revoke
    ABSENT = "ABSENT"


GrantRow = Union[UserPermission, RolePermission]


@dataclass
class GrantResult:
    grant: GrantRow
    outcome: GrantOutcome

    @property
    def changed(self) -> bool:
        return self.outcome in (
            GrantOutcome.CREATED,
            GrantOutcome.REACTIVATED,
            GrantOutcome.REVOKED,
        )


@dataclass
class BundleResult:
    """Outcome of a page or custom-mode grant/revoke."""

    permission: Permission
    api_permissions: List[Permission] = field(default_factory=list)
    outcomes: Dict[str, GrantOutcome] = field(default_factory=dict)

    @property
    def permission_names(self) -> List[str]:
        return list(self.outcomes.keys())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _bundle_api_names(permission_name: str) -> Set[str]:
    """API permission names implied by a stored page or mode permission."""
    if not permission_name.startswith("page:"):
        return set()

    parts = permission_name[len("page:"):].split(":")
    try:
        if len(parts) == 2:
            apis = api_permissions_for_page(parts[0], PageAction(parts[1]))
        elif len(parts) == 3 and parts[1] == "mode":
            apis = api_permissions_for_mode(parts[0], parts[2])
        else:
            return set()
    except (ValueError, NotFoundError):
        # Stored grant for a page or mode no longer in the registry
        return set()

    return {api.name for api in apis}


# ============================================================
# Store
# ============================================================


class PermissionStore:
    """Permission and grant persistence for users and roles."""

    def __init__(self, db: AsyncSession, clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self._clock = clock or _utcnow

    # ==================== Permissions ====================

    async def get_permission(self, permission_id: int) -> Permission:
        result = await self.db.execute(
            select(Permission).where(Permission.id == permission_id)
        )
        permission = result.scalar_one_or_none()
        if permission is None:
            raise NotFoundError("Permission")
        return permission

    async def get_permission_by_name(self, name: str) -> Optional[Permission]:
        result = await self.db.execute(
            select(Permission).where(Permission.name == name)
        )
        return result.scalar_one_or_none()

    async def list_permissions(self, resource: Optional[str] = None) -> List[Permission]:
        query = select(Permission).order_by(Permission.resource, Permission.action)
        if resource:
            query = query.where(Permission.resource == resource)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def create_permission(
        self,
        resource: str,
        action: str,
        description: Optional[str] = None,
    ) -> Permission:
        """
        Create a new ``resource:action`` permission.

        Raises:
            ValidationError: If resource or action is blank
            ConflictError: If a permission with the same name exists
        """
        resource, action = self._validate_scope(resource, action)
        name = f"{resource}:{action}"

        if await self.get_permission_by_name(name) is not None:
            raise ConflictError(f"Permission '{name}' already exists")

        permission = Permission(
            name=name,
            resource=resource,
            action=action,
            description=description,
        )
        self.db.add(permission)
        await self.db.flush()

        logger.info(f"Created permission {name}")
        return permission

    async def get_or_create_permission(
        self,
        resource: str,
        action: str,
        description: Optional[str] = None,
    ) -> Permission:
        """Fetch a permission by scope, creating it race-safely if missing."""
        resource, action = self._validate_scope(resource, action)
        name = f"{resource}:{action}"

        existing = await self.get_permission_by_name(name)
        if existing is not None:
            return existing

        now = self._clock()
        stmt = (
            self._insert(Permission)
            .values(
                name=name,
                resource=resource,
                action=action,
                description=description,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["name"])
        )
        await self.db.execute(stmt)

        permission = await self.get_permission_by_name(name)
        if permission is None:
            raise RuntimeError(f"Permission {name} vanished after upsert")
        return permission

    # ==================== Grants ====================

    async def grant(
        self,
        subject: Subject,
        permission_id: int,
        granted_by: Optional[UUID] = None,
    ) -> GrantResult:
        """
        Grant one permission to a user or role.

        Returns UNCHANGED when the grant is already active, REACTIVATED
        when a revoked row was switched back on, CREATED otherwise.

        Raises:
            NotFoundError: If the subject or permission does not exist
            ValidationError: If the user is inactive, or the permission is a
                page or mode permission (those go through grant_page and
                grant_custom_mode so their checks apply)
        """
        await self._load_subject(subject, for_grant=True)
        permission = await self.get_permission(permission_id)
        if permission.name.startswith("page:"):
            raise ValidationError(
                f"'{permission.name}' is a page permission; use the page grant endpoints"
            )
        return await self._grant(subject, permission, granted_by)

    async def revoke(self, subject: Subject, permission_id: int) -> GrantResult:
        """
        Deactivate a grant.

        Revoking an already inactive grant is a no-op (UNCHANGED).

        Raises:
            NotFoundError: If there is no grant row at all
        """
        await self._load_subject(subject)
        grant = await self._find_grant(subject, permission_id)
        if grant is None:
            raise NotFoundError("Permission grant")

        if not grant.is_active:
            return GrantResult(grant, GrantOutcome.UNCHANGED)

        grant.is_active = False
        await self.db.flush()
        return GrantResult(grant, GrantOutcome.REVOKED)

    async def list_grants(
        self, subject: Subject, include_inactive: bool = False
    ) -> List[GrantRow]:
        model, column = self._link(subject)
        query = select(model).where(column == subject.id).order_by(model.id)
        if not include_inactive:
            query = query.where(model.is_active.is_(True))
        result = await self.db.execute(query)
        return list(result.unique().scalars().all())

    # ==================== Page Grants ====================

    async def grant_page(
        self,
        subject: Subject,
        page: str,
        action: Union[PageAction, str],
        granted_by: Optional[UUID] = None,
    ) -> BundleResult:
        """
        Grant page access together with the page's API permissions.

        ``edit`` also grants ``view``.

        Raises:
            NotFoundError: Unknown page, user or role
            ValidationError: Edit on a view-only page, edit on an
                admin-only page for a non-admin, or an inactive user
        """
        action = parse_page_action(action)
        definition = get_page(page)
        target = await self._load_subject(subject, for_grant=True)

        if action == PageAction.EDIT:
            if not definition.supports_edit_mode:
                raise ValidationError(f"Page '{page}' does not support edit mode")
            if definition.admin_only and not (
                subject.kind == SubjectKind.USER and target.is_admin
            ):
                raise ValidationError(
                    f"Edit access to '{page}' can only be granted to admin users"
                )

        actions = [PageAction.VIEW]
        if action == PageAction.EDIT:
            actions.append(PageAction.EDIT)

        result: Optional[BundleResult] = None
        outcomes: Dict[str, GrantOutcome] = {}
        for page_action in actions:
            permission = await self.get_or_create_permission(
                f"page:{page}",
                page_action.value,
                description=f"{definition.display_name} ({page_action.value})",
            )
            granted = await self._grant(subject, permission, granted_by)
            outcomes[permission.name] = granted.outcome
            result = BundleResult(permission=permission)

        api_permissions, api_outcomes = await self._grant_apis(
            subject, api_permissions_for_page(page, action), granted_by
        )
        result.api_permissions = api_permissions
        result.outcomes = {**outcomes, **api_outcomes}

        logger.info(
            f"Granted page {page}:{action.value} to {subject.kind.value} {subject.id}"
        )
        return result

    async def revoke_page(
        self,
        subject: Subject,
        page: str,
        action: Union[PageAction, str],
    ) -> BundleResult:
        """
        Revoke page access and the API permissions only it provided.

        Revoking ``view`` also revokes ``edit``. API permissions still
        covered by another active page or mode grant of the subject are
        kept.

        Raises:
            NotFoundError: Unknown page, subject, or no active page grant
        """
        action = parse_page_action(action)
        get_page(page)
        await self._load_subject(subject)

        primary_name = page_permission_name(page, action)
        primary = await self.get_permission_by_name(primary_name)
        primary_grant = (
            await self._find_grant(subject, primary.id) if primary is not None else None
        )
        if primary_grant is None or not primary_grant.is_active:
            raise NotFoundError("Page permission grant")

        outcomes: Dict[str, GrantOutcome] = {}
        if action == PageAction.VIEW:
            revoke_names = [
                page_permission_name(page, PageAction.VIEW),
                page_permission_name(page, PageAction.EDIT),
            ]
            apis = api_permissions_for_page(page, PageAction.EDIT)
        else:
            revoke_names = [primary_name]
            view_names = {api.name for api in api_permissions_for_page(page, PageAction.VIEW)}
            apis = [
                api for api in api_permissions_for_page(page, PageAction.EDIT)
                if api.name not in view_names
            ]

        for name in revoke_names:
            outcomes[name] = await self._deactivate_by_name(subject, name)

        api_permissions, api_outcomes = await self._revoke_apis(subject, apis)
        outcomes.update(api_outcomes)

        logger.info(
            f"Revoked page {page}:{action.value} from {subject.kind.value} {subject.id}"
        )
        return BundleResult(
            permission=primary,
            api_permissions=api_permissions,
            outcomes=outcomes,
        )

    async def bulk_grant_pages(
        self,
        subject: Subject,
        items: Sequence[Tuple[str, Union[PageAction, str]]],
        granted_by: Optional[UUID] = None,
    ) -> List[BundleResult]:
        """Grant several pages in one unit of work; any failure aborts all."""
        if not items:
            raise ValidationError("At least one page permission is required")

        results = []
        for page, action in items:
            results.append(await self.grant_page(subject, page, action, granted_by))
        return results

    # ==================== Custom Modes ====================

    async def grant_custom_mode(
        self,
        subject: Subject,
        page: str,
        mode_id: str,
        granted_by: Optional[UUID] = None,
    ) -> BundleResult:
        """
        Grant a page's custom mode and the mode's API permissions.

        Raises:
            NotFoundError: Unknown page, mode, user or role
            ValidationError: If the user is inactive
        """
        mode = get_mode(page, mode_id)
        await self._load_subject(subject, for_grant=True)

        permission = await self.get_or_create_permission(
            f"page:{page}:mode",
            mode_id,
            description=f"{page} custom mode: {mode.name}",
        )
        granted = await self._grant(subject, permission, granted_by)

        api_permissions, api_outcomes = await self._grant_apis(
            subject, api_permissions_for_mode(page, mode_id), granted_by
        )

        logger.info(
            f"Granted mode {page}:{mode_id} to {subject.kind.value} {subject.id}"
        )
        return BundleResult(
            permission=permission,
            api_permissions=api_permissions,
            outcomes={permission.name: granted.outcome, **api_outcomes},
        )

    async def revoke_custom_mode(
        self,
        subject: Subject,
        page: str,
        mode_id: str,
    ) -> BundleResult:
        """
        Revoke a custom mode and the API permissions only it provided.

        Raises:
            NotFoundError: Unknown page, mode, subject, or no active mode grant
        """
        get_mode(page, mode_id)
        await self._load_subject(subject)

        name = mode_permission_name(page, mode_id)
        permission = await self.get_permission_by_name(name)
        grant = (
            await self._find_grant(subject, permission.id) if permission is not None else None
        )
        if grant is None or not grant.is_active:
            raise NotFoundError("Custom mode grant")

        outcomes = {name: await self._deactivate_by_name(subject, name)}
        api_permissions, api_outcomes = await self._revoke_apis(
            subject, api_permissions_for_mode(page, mode_id)
        )
        outcomes.update(api_outcomes)

        return BundleResult(
            permission=permission,
            api_permissions=api_permissions,
            outcomes=outcomes,
        )

    # ==================== Internals ====================

    def _insert(self, model):
        dialect = self.db.get_bind().dialect.name
        insert = _DIALECT_INSERTS.get(dialect)
        if insert is None:
            raise RuntimeError(f"Unsupported database dialect for upserts: {dialect}")
        return insert(model)

    @staticmethod
    def _link(subject: Subject):
        if subject.kind == SubjectKind.USER:
            return UserPermission, UserPermission.user_id
        return RolePermission, RolePermission.role_id

    @staticmethod
    def _validate_scope(resource: str, action: str) -> Tuple[str, str]:
        resource = (resource or "").strip()
        action = (action or "").strip()
        if not resource or not action:
            raise ValidationError("Permission resource and action are required")
        if any(ch.isspace() for ch in resource + action):
            raise ValidationError("Permission resource and action cannot contain whitespace")
        return resource, action

    async def _load_subject(self, subject: Subject, for_grant: bool = False):
        if subject.kind == SubjectKind.USER:
            result = await self.db.execute(select(User).where(User.id == subject.id))
            user = result.scalar_one_or_none()
            if user is None:
                raise NotFoundError("User")
            if for_grant and not user.is_active:
                raise ValidationError("Cannot grant permissions to an inactive user")
            return user

        result = await self.db.execute(select(Role).where(Role.id == subject.id))
        role = result.scalar_one_or_none()
        if role is None:
            raise NotFoundError("Role")
        return role

    async def _find_grant(self, subject: Subject, permission_id: int) -> Optional[GrantRow]:
        model, column = self._link(subject)
        result = await self.db.execute(
            select(model)
            .where(column == subject.id, model.permission_id == permission_id)
            .execution_options(populate_existing=True)
        )
        return result.unique().scalar_one_or_none()

    async def _grant(
        self,
        subject: Subject,
        permission: Permission,
        granted_by: Optional[UUID],
    ) -> GrantResult:
        existing = await self._find_grant(subject, permission.id)
        if existing is not None:
            return await self._reactivate(existing, granted_by)

        model, column = self._link(subject)
        stmt = (
            self._insert(model)
            .values(
                **{
                    column.key: subject.id,
                    "permission_id": permission.id,
                    "granted_by": granted_by,
                    "granted_at": self._clock(),
                    "is_active": True,
                }
            )
            .on_conflict_do_nothing(index_elements=[column.key, "permission_id"])
        )
        inserted = await self.db.execute(stmt)

        grant = await self._find_grant(subject, permission.id)
        if inserted.rowcount == 0:
            # A concurrent grant won the insert
            return await self._reactivate(grant, granted_by)
        return GrantResult(grant, GrantOutcome.CREATED)

    async def _reactivate(self, grant: GrantRow, granted_by: Optional[UUID]) -> GrantResult:
        if grant.is_active:
            return GrantResult(grant, GrantOutcome.UNCHANGED)

        grant.is_active = True
        grant.granted_by = granted_by
        grant.granted_at = self._clock()
        await self.db.flush()
        return GrantResult(grant, GrantOutcome.REACTIVATED)

    async def _grant_apis(
        self,
        subject: Subject,
        apis: Iterable[ApiPermission],
        granted_by: Optional[UUID],
    ) -> Tuple[List[Permission], Dict[str, GrantOutcome]]:
        permissions = []
        outcomes: Dict[str, GrantOutcome] = {}
        for api in apis:
            permission = await self.get_or_create_permission(
                api.resource, api.action, description=api.description or None
            )
            granted = await self._grant(subject, permission, granted_by)
            permissions.append(permission)
            outcomes[permission.name] = granted.outcome
        return permissions, outcomes

    async def _active_bundle_coverage(self, subject: Subject) -> Set[str]:
        """API names covered by the subject's remaining active page/mode grants."""
        model, column = self._link(subject)
        result = await self.db.execute(
            select(Permission.name)
            .join(model, model.permission_id == Permission.id)
            .where(
                column == subject.id,
                model.is_active.is_(True),
                Permission.name.like("page:%"),
            )
        )
        covered: Set[str] = set()
        for name in result.scalars().all():
            covered |= _bundle_api_names(name)
        return covered

    async def _revoke_apis(
        self,
        subject: Subject,
        apis: Iterable[ApiPermission],
    ) -> Tuple[List[Permission], Dict[str, GrantOutcome]]:
        covered = await self._active_bundle_coverage(subject)

        permissions = []
        outcomes: Dict[str, GrantOutcome] = {}
        for api in apis:
            permission = await self.get_permission_by_name(api.name)
            if permission is None:
                outcomes[api.name] = GrantOutcome.ABSENT
                continue

            permissions.append(permission)
            if api.name in covered:
                outcomes[api.name] = GrantOutcome.RETAINED
            else:
                outcomes[api.name] = await self._deactivate(subject, permission.id)
        return permissions, outcomes

    async def _deactivate_by_name(self, subject: Subject, name: str) -> GrantOutcome:
        permission = await self.get_permission_by_name(name)
        if permission is None:
            return GrantOutcome.ABSENT
        return await self._deactivate(subject, permission.id)

    async def _deactivate(self, subject: Subject, permission_id: int) -> GrantOutcome:
        grant = await self._find_grant(subject, permission_id)
        if grant is None or not grant.is_active:
            return GrantOutcome.ABSENT

        grant.is_active = False
        await self.db.flush()
        return GrantOutcome.REVOKED
