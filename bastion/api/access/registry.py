"""
BASTION - Page Permission Registry

Static map of application pages to the API permissions they need.
Granting a page (view/edit) or one of its custom modes grants the
corresponding ``resource:action`` permissions alongside it.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from bastion.api.errors import NotFoundError, ValidationError


# ============================================================
# Definitions
# ============================================================


class PageAction(str, Enum):
    VIEW = "view"
    EDIT = "edit"


@dataclass(frozen=True)
class ApiPermission:
    """One endpoint and the scoped permission it requires."""

    resource: str
    action: str
    method: str
    path: str
    description: str = ""

    @property
    def name(self) -> str:
        return f"{self.resource}:{self.action}"

    def to_dict(self) -> dict:
        return {
            "resource": self.resource,
            "action": self.action,
            "name": self.name,
            "method": self.method,
            "path": self.path,
            "description": self.description,
        }


@dataclass(frozen=True)
class CustomMode:
    """A named, page-specific bundle independent of view/edit."""

    mode_id: str
    name: str
    description: str = ""
    view_apis: Tuple[ApiPermission, ...] = ()
    edit_apis: Tuple[ApiPermission, ...] = ()

    def to_dict(self) -> dict:
        return {
            "mode_id": self.mode_id,
            "name": self.name,
            "description": self.description,
            "view_apis": [api.to_dict() for api in self.view_apis],
            "edit_apis": [api.to_dict() for api in self.edit_apis],
        }


@dataclass(frozen=True)
class PageDefinition:
    """A UI page and the API surface behind it."""

    page: str
    display_name: str
    description: str
    category: str
    view_apis: Tuple[ApiPermission, ...] = ()
    edit_apis: Tuple[ApiPermission, ...] = ()
    supports_edit_mode: bool = True
    # Edit access may only be granted to admin users
    admin_only: bool = False
    custom_modes: Tuple[CustomMode, ...] = field(default_factory=tuple)

    def get_mode(self, mode_id: str) -> Optional[CustomMode]:
        for mode in self.custom_modes:
            if mode.mode_id == mode_id:
                return mode
        return None

    def to_dict(self) -> dict:
        return {
            "page": self.page,
            "display_name": self.display_name,
            "description": self.description,
            "category": self.category,
            "supports_edit_mode": self.supports_edit_mode,
            "admin_only": self.admin_only,
            "view_apis": [api.to_dict() for api in self.view_apis],
            "edit_apis": [api.to_dict() for api in self.edit_apis],
            "custom_modes": [mode.to_dict() for mode in self.custom_modes],
        }


def _api(resource: str, action: str, method: str, path: str, description: str = "") -> ApiPermission:
    return ApiPermission(resource, action, method, path, description)


# ============================================================
# Registry
# ============================================================


PAGE_REGISTRY: Dict[str, PageDefinition] = {
    "dashboard": PageDefinition(
        page="dashboard",
        display_name="Dashboard",
        description="View dashboard and statistics",
        category="general",
        view_apis=(
            _api("dashboard", "read", "GET", "/api/v1/auth/me", "Get current user info"),
            _api("search", "read", "GET", "/api/v1/search/pages", "Search pages"),
            _api("search", "read", "GET", "/api/v1/search/pages/categories", "Get pages by category"),
        ),
        supports_edit_mode=False,
    ),
    "students": PageDefinition(
        page="students",
        display_name="Students",
        description="Manage students",
        category="academic",
        view_apis=(
            _api("students", "read", "GET", "/api/v1/students", "List all students"),
            _api("students", "read", "GET", "/api/v1/students/{id}", "Get student by ID"),
            _api("tracks", "read", "GET", "/api/v1/tracks", "List tracks"),
            _api("cohorts", "read", "GET", "/api/v1/cohorts", "List cohorts"),
        ),
        edit_apis=(
            _api("students", "create", "POST", "/api/v1/students", "Create new student"),
            _api("students", "update", "PUT", "/api/v1/students/{id}", "Update student"),
            _api("students", "delete", "DELETE", "/api/v1/students/{id}", "Delete student"),
            _api("tracks", "read", "GET", "/api/v1/tracks/{id}", "Get track by ID"),
            _api("cohorts", "update", "PUT", "/api/v1/cohorts/{id}", "Update cohort"),
        ),
        custom_modes=(
            CustomMode(
                mode_id="teacher",
                name="Teacher",
                description="Students of the teacher's own classes",
                view_apis=(
                    _api("students", "read_own_classes", "GET", "/api/v1/students/my-classes", "List own class students"),
                    _api("classes", "read", "GET", "/api/v1/classes", "List classes"),
                ),
            ),
            CustomMode(
                mode_id="counselor",
                name="Counselor",
                description="Students of the counselor's cohorts, including exits",
                view_apis=(
                    _api("students", "read_cohort", "GET", "/api/v1/students/my-cohorts", "List own cohort students"),
                    _api("student-exits", "read", "GET", "/api/v1/student-exits", "List student exits"),
                ),
                edit_apis=(
                    _api("students", "update_notes", "PUT", "/api/v1/students/{id}/notes", "Update counselor notes"),
                ),
            ),
        ),
    ),
    "resources": PageDefinition(
        page="resources",
        display_name="Resources",
        description="Manage system resources (users, roles, permissions)",
        category="administration",
        view_apis=(
            _api("users", "read", "GET", "/api/v1/users", "List all users"),
            _api("roles", "read", "GET", "/api/v1/roles", "List all roles"),
            _api("permissions", "read", "GET", "/api/v1/permissions", "List all permissions"),
            _api("permissions", "read", "GET", "/api/v1/permissions/pages", "List all page permissions"),
            _api("permissions", "read", "GET", "/api/v1/permissions/users/{user_id}/page-permissions", "Get user page permissions"),
        ),
        edit_apis=(
            _api("users", "create", "POST", "/api/v1/users", "Create new user"),
            _api("users", "update", "PUT", "/api/v1/users/{id}", "Update user"),
            _api("roles", "create", "POST", "/api/v1/roles", "Create new role"),
            _api("roles", "update", "PUT", "/api/v1/roles/{id}", "Update role"),
            _api("permissions", "create", "POST", "/api/v1/permissions", "Create new permission"),
            _api("permissions", "update", "POST", "/api/v1/permissions/users/{user_id}/grant-page", "Grant page permission to user"),
            _api("permissions", "update", "POST", "/api/v1/permissions/roles/{role_id}/grant-page", "Grant page permission to role"),
            _api("permissions", "update", "POST", "/api/v1/permissions/users/{user_id}/grant", "Grant permission to user"),
        ),
    ),
    "soc": PageDefinition(
        page="soc",
        display_name="Security Operations",
        description="View security logs and incidents",
        category="security",
        view_apis=(
            _api("soc", "read", "GET", "/api/v1/soc/audit-logs", "View audit logs"),
            _api("soc", "read", "GET", "/api/v1/soc/stats", "View security statistics"),
            _api("soc", "read", "GET", "/api/v1/soc/incidents", "View security incidents"),
            _api("soc", "read", "GET", "/api/v1/soc/blocked-ips", "View blocked IPs"),
        ),
        edit_apis=(
            _api("soc", "update", "PUT", "/api/v1/soc/incidents/{id}", "Update security incident"),
            _api("soc", "update", "POST", "/api/v1/soc/audit-logs/{id}/mark-incident", "Mark as security incident"),
            _api("soc", "update", "POST", "/api/v1/soc/block-ip", "Block an IP address"),
            _api("soc", "update", "POST", "/api/v1/soc/unblock-ip", "Unblock an IP address"),
        ),
        admin_only=True,
    ),
    "api-keys": PageDefinition(
        page="api-keys",
        display_name="API Keys",
        description="Manage API keys",
        category="administration",
        view_apis=(
            _api("api-keys", "read", "GET", "/api/v1/auth/api-keys", "List API keys"),
        ),
        edit_apis=(
            _api("api-keys", "create", "POST", "/api/v1/auth/api-keys", "Create new API key"),
            _api("api-keys", "delete", "DELETE", "/api/v1/auth/api-keys/{id}", "Revoke API key"),
        ),
        admin_only=True,
    ),
    "student-exits": PageDefinition(
        page="student-exits",
        display_name="Student Exits",
        description="Manage student exits and transfers",
        category="academic",
        view_apis=(
            _api("student-exits", "read", "GET", "/api/v1/student-exits", "List all student exits"),
        ),
        edit_apis=(
            _api("student-exits", "create", "POST", "/api/v1/student-exits", "Create student exit record"),
            _api("student-exits", "update", "PUT", "/api/v1/student-exits/{student_id}", "Update student exit record"),
        ),
    ),
}


# ============================================================
# Lookup helpers
# ============================================================


def get_page(page: str) -> PageDefinition:
    """
    Look up a page definition.

    Raises:
        NotFoundError: If the page is not registered
    """
    definition = PAGE_REGISTRY.get(page)
    if definition is None:
        raise NotFoundError("Page")
    return definition


def get_mode(page: str, mode_id: str) -> CustomMode:
    """
    Look up a custom mode of a page.

    Raises:
        NotFoundError: If the page or the mode is not registered
    """
    mode = get_page(page).get_mode(mode_id)
    if mode is None:
        raise NotFoundError("Custom mode")
    return mode


def parse_page_action(action: str) -> PageAction:
    try:
        return PageAction(action)
    except ValueError:
        raise ValidationError(
            f"Invalid page action '{action}'",
            details={"allowed": [a.value for a in PageAction]},
        )


def unique_api_permissions(apis: Iterable[ApiPermission]) -> List[ApiPermission]:
    """Deduplicate by ``resource:action``, keeping the first occurrence."""
    seen: Dict[str, ApiPermission] = {}
    for api in apis:
        seen.setdefault(api.name, api)
    return list(seen.values())


def api_permissions_for_page(page: str, action: PageAction) -> List[ApiPermission]:
    """
    Concrete permissions behind a page action.

    ``view`` covers the view APIs; ``edit`` covers view and edit APIs.
    Unknown pages have none.
    """
    definition = PAGE_REGISTRY.get(page)
    if definition is None:
        return []

    apis = list(definition.view_apis)
    if PageAction(action) == PageAction.EDIT:
        apis.extend(definition.edit_apis)
    return unique_api_permissions(apis)


def api_permissions_for_mode(page: str, mode_id: str) -> List[ApiPermission]:
    mode = get_mode(page, mode_id)
    return unique_api_permissions([*mode.view_apis, *mode.edit_apis])


def page_permission_name(page: str, action: PageAction) -> str:
    return f"page:{page}:{PageAction(action).value}"


def mode_permission_name(page: str, mode_id: str) -> str:
    return f"page:{page}:mode:{mode_id}"


def get_categories() -> List[str]:
    return sorted({definition.category for definition in PAGE_REGISTRY.values()})
