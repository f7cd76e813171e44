"""
BASTION - Permission Presets

Named bundles of page grants for common job roles. Applying a preset is
a bulk page grant, so every page check (edit support, admin-only pages)
still applies.
"""

from dataclasses import dataclass
from typing import Dict, List, Tuple

from bastion.api.access.registry import PageAction
from bastion.api.errors import NotFoundError


@dataclass(frozen=True)
class PermissionPreset:
    preset_id: str
    name: str
    description: str
    pages: Tuple[Tuple[str, PageAction], ...]

    def to_dict(self) -> dict:
        return {
            "preset_id": self.preset_id,
            "name": self.name,
            "description": self.description,
            "pages": [{"page": page, "action": action.value} for page, action in self.pages],
        }


VIEW = PageAction.VIEW
EDIT = PageAction.EDIT


PRESETS: Dict[str, PermissionPreset] = {
    "teacher": PermissionPreset(
        preset_id="teacher",
        name="Teacher",
        description="Dashboard and full student management",
        pages=(("dashboard", VIEW), ("students", EDIT)),
    ),
    "counselor": PermissionPreset(
        preset_id="counselor",
        name="Counselor",
        description="Read access to students and security events",
        pages=(("dashboard", VIEW), ("students", VIEW), ("soc", VIEW)),
    ),
    "administrator": PermissionPreset(
        preset_id="administrator",
        name="Administrator",
        description="Full access; admin-only pages require an admin user",
        pages=(
            ("dashboard", VIEW),
            ("students", EDIT),
            ("resources", EDIT),
            ("soc", EDIT),
            ("api-keys", EDIT),
        ),
    ),
    "commander": PermissionPreset(
        preset_id="commander",
        name="Commander",
        description="Resource management with student and security oversight",
        pages=(("dashboard", VIEW), ("students", VIEW), ("resources", EDIT), ("soc", VIEW)),
    ),
    "viewer": PermissionPreset(
        preset_id="viewer",
        name="Viewer",
        description="Read-only access",
        pages=(("dashboard", VIEW), ("students", VIEW), ("soc", VIEW)),
    ),
    "api-developer": PermissionPreset(
        preset_id="api-developer",
        name="API Developer",
        description="Manage API keys (admin users only)",
        pages=(("dashboard", VIEW), ("api-keys", EDIT)),
    ),
}


def get_preset(preset_id: str) -> PermissionPreset:
    """
    Look up a preset.

    Raises:
        NotFoundError: If no preset has this id
    """
    preset = PRESETS.get(preset_id)
    if preset is None:
        raise NotFoundError("Permission preset")
    return preset


def list_presets() -> List[PermissionPreset]:
    return list(PRESETS.values())
