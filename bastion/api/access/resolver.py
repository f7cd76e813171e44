"""
BASTION - Permission Resolver

Answers "may this actor do X": the union of the actor's active direct
grants and the active grants of the actor's role. Admins pass every
check.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bastion.api.access.registry import (
    PAGE_REGISTRY,
    PageAction,
    mode_permission_name,
    page_permission_name,
)
from bastion.api.db.models import Permission, RolePermission, UserPermission

logger = logging.getLogger(__name__)


class Actor(Protocol):
    """Anything the resolver can check: a Principal or a User row."""

    id: UUID
    is_admin: bool
    role_id: Optional[int]


# ============================================================
# Pure evaluation
# ============================================================


def scope_name(resource: str, action: str) -> str:
    return f"{resource}:{action}"


def page_granted(names: Set[str], page: str, action: PageAction) -> bool:
    """
    Decide page access from a set of held permission names.

    ``view`` holds with a page view grant, a page edit grant, or every
    concrete permission in the page's edit-API list. That list must be
    non-empty. ``edit`` needs the explicit page edit grant.
    """
    action = PageAction(action)

    if page_permission_name(page, PageAction.EDIT) in names:
        return True
    if action == PageAction.EDIT:
        return False

    if page_permission_name(page, PageAction.VIEW) in names:
        return True

    definition = PAGE_REGISTRY.get(page)
    if definition is None:
        return False
    required = {api.name for api in definition.edit_apis}
    return bool(required) and required.issubset(names)


def mode_granted(names: Set[str], page: str, mode_id: str) -> bool:
    return mode_permission_name(page, mode_id) in names


def build_page_matrix(names: Set[str], is_admin: bool = False) -> Dict[str, Dict[str, Any]]:
    """Per-page view/edit/mode flags for every registered page."""
    matrix: Dict[str, Dict[str, Any]] = {}
    for page, definition in PAGE_REGISTRY.items():
        view = is_admin or page_granted(names, page, PageAction.VIEW)
        edit = definition.supports_edit_mode and (
            is_admin or page_granted(names, page, PageAction.EDIT)
        )
        matrix[page] = {
            "view": view,
            "edit": edit,
            "modes": {
                mode.mode_id: is_admin or mode_granted(names, page, mode.mode_id)
                for mode in definition.custom_modes
            },
        }
    return matrix


# ============================================================
# Resolver
# ============================================================


class PermissionResolver:
    """Reads active grants and evaluates checks against them."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def direct_permission_names(self, user_id: UUID) -> Set[str]:
        result = await self.db.execute(
            select(Permission.name)
            .join(UserPermission, UserPermission.permission_id == Permission.id)
            .where(
                UserPermission.user_id == user_id,
                UserPermission.is_active.is_(True),
            )
        )
        return set(result.scalars().all())

    async def role_permission_names(self, role_id: Optional[int]) -> Set[str]:
        if role_id is None:
            return set()

        result = await self.db.execute(
            select(Permission.name)
            .join(RolePermission, RolePermission.permission_id == Permission.id)
            .where(
                RolePermission.role_id == role_id,
                RolePermission.is_active.is_(True),
            )
        )
        return set(result.scalars().all())

    async def permission_names(self, actor: Actor) -> Set[str]:
        """Union of active direct grants and active role grants."""
        direct = await self.direct_permission_names(actor.id)
        inherited = await self.role_permission_names(actor.role_id)
        return direct | inherited

    async def resolve(self, actor: Actor, resource: str, action: str) -> bool:
        """The single scoped-permission check used by every guard."""
        if actor.is_admin:
            return True
        names = await self.permission_names(actor)
        return scope_name(resource, action) in names

    async def resolve_page(self, actor: Actor, page: str, action: PageAction) -> bool:
        if actor.is_admin:
            return True
        names = await self.permission_names(actor)
        return page_granted(names, page, action)

    async def resolve_custom_mode(self, actor: Actor, page: str, mode_id: str) -> bool:
        if actor.is_admin:
            return True
        names = await self.permission_names(actor)
        return mode_granted(names, page, mode_id)

    async def page_matrix(self, actor: Actor) -> Dict[str, Dict[str, Any]]:
        if actor.is_admin:
            return build_page_matrix(set(), is_admin=True)
        names = await self.permission_names(actor)
        return build_page_matrix(names)

    async def role_page_matrix(self, role_id: int) -> Dict[str, Dict[str, Any]]:
        names = await self.role_permission_names(role_id)
        return build_page_matrix(names)

    async def effective_permissions(self, actor: Actor) -> List[Dict[str, Any]]:
        """
        Every permission the actor holds, tagged with where it comes from.

        Admins get every known permission with source ``admin``.
        """
        if actor.is_admin:
            result = await self.db.execute(select(Permission).order_by(Permission.name))
            return [
                _permission_entry(permission, ["admin"])
                for permission in result.scalars().all()
            ]

        direct = await self.direct_permission_names(actor.id)
        inherited = await self.role_permission_names(actor.role_id)
        names = direct | inherited
        if not names:
            return []

        result = await self.db.execute(
            select(Permission)
            .where(Permission.name.in_(names))
            .order_by(Permission.name)
        )

        entries = []
        for permission in result.scalars().all():
            sources = []
            if permission.name in direct:
                sources.append("user")
            if permission.name in inherited:
                sources.append("role")
            entries.append(_permission_entry(permission, sources))
        return entries


def _permission_entry(permission: Permission, sources: Iterable[str]) -> Dict[str, Any]:
    return {
        "id": permission.id,
        "name": permission.name,
        "resource": permission.resource,
        "action": permission.action,
        "sources": list(sources),
    }
