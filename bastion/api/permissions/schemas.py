"""
Permission Schemas

Pydantic models for permission request/response validation.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class PermissionCreate(BaseModel):
    resource: str = Field(..., min_length=1, max_length=100)
    action: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)


class PermissionResponse(BaseModel):
    id: int
    name: str
    resource: str
    action: str
    description: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class PermissionListResponse(BaseModel):
    permissions: List[PermissionResponse]
    total: int


# ==================== Grants ====================


class GrantRequest(BaseModel):
    permission_id: int


class GrantResponse(BaseModel):
    """State of one grant after a grant or revoke."""

    subject_type: str
    subject_id: str
    permission: PermissionResponse
    outcome: str
    is_active: bool
    granted_by: Optional[UUID] = None
    granted_at: Optional[datetime] = None


class PageGrantRequest(BaseModel):
    page: str = Field(..., min_length=1, max_length=100)
    action: str = "view"


class BulkPageGrantRequest(BaseModel):
    permissions: List[PageGrantRequest] = Field(..., min_length=1, max_length=100)


class CustomModeRequest(BaseModel):
    page: str = Field(..., min_length=1, max_length=100)
    mode_id: str = Field(..., min_length=1, max_length=100)


class BundleResponse(BaseModel):
    """Page or custom-mode grant/revoke result."""

    page_permission: str
    api_permissions: List[str]
    outcomes: Dict[str, str]


class BulkBundleResponse(BaseModel):
    results: List[BundleResponse]


# ==================== Effective permissions ====================


class EffectivePermission(BaseModel):
    id: int
    name: str
    resource: str
    action: str
    sources: List[str]


class UserPermissionsResponse(BaseModel):
    user_id: UUID
    is_admin: bool
    role_id: Optional[int] = None
    permissions: List[EffectivePermission]


class PagePermissionsResponse(BaseModel):
    """Per-page ``{view, edit, modes}`` flags."""

    subject_type: str
    subject_id: str
    pages: Dict[str, Dict[str, Any]]


class PageRegistryResponse(BaseModel):
    pages: List[Dict[str, Any]]
    categories: List[str]


# ==================== Presets ====================


class PresetListResponse(BaseModel):
    presets: List[Dict[str, Any]]


class PresetApplyResponse(BulkBundleResponse):
    preset_id: str
