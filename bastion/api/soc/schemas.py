"""
SOC Schemas

Pydantic models for SOC request/response validation.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from bastion.api.config import settings


# ==================== Audit Logs ====================


class AuditLogResponse(BaseModel):
    """Audit log entry."""

    id: int
    user_id: Optional[UUID] = None
    user_email: Optional[str] = None
    auth_method: str
    api_key_id: Optional[int] = None
    api_key_owner_id: Optional[UUID] = None
    action: str
    resource: str
    resource_id: Optional[str] = None
    status: str
    error_message: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    details: Optional[Dict[str, Any]] = None
    correlation_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    http_method: Optional[str] = None
    http_path: Optional[str] = None
    response_time_ms: Optional[int] = None
    created_at: datetime

    # Incident fields
    incident_status: Optional[str] = None
    incident_source: Optional[str] = None
    priority: Optional[str] = None
    assigned_to: Optional[UUID] = None
    analyst_notes: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[UUID] = None

    # Pinning
    is_pinned: bool = False
    pinned_at: Optional[datetime] = None
    pinned_by: Optional[UUID] = None

    class Config:
        from_attributes = True


class AuditLogListResponse(BaseModel):
    """Paginated audit log list."""

    logs: List[AuditLogResponse]
    total: int
    limit: int
    offset: int


# ==================== Incidents ====================


class IncidentListResponse(BaseModel):
    incidents: List[AuditLogResponse]
    total: int


class IncidentUpdateRequest(BaseModel):
    """Triage update for one incident."""

    incident_status: Optional[str] = None
    priority: Optional[str] = None
    assigned_to: Optional[UUID] = None
    analyst_notes: Optional[str] = Field(None, max_length=5000)

    @model_validator(mode="after")
    def _require_change(self):
        if (
            self.incident_status is None
            and self.priority is None
            and self.assigned_to is None
            and self.analyst_notes is None
        ):
            raise ValueError("At least one field must be provided")
        return self


class MarkIncidentRequest(BaseModel):
    """Promote an audit entry to an incident by hand."""

    priority: str = "MEDIUM"
    analyst_notes: Optional[str] = Field(None, max_length=5000)


class BulkFalsePositiveRequest(BaseModel):
    incident_ids: List[int] = Field(..., min_length=1, max_length=500)
    analyst_notes: Optional[str] = Field(None, max_length=5000)


class BulkFailure(BaseModel):
    id: int
    reason: str


class BulkFalsePositiveResponse(BaseModel):
    updated: List[int]
    failed: List[BulkFailure]
    updated_count: int


class CleanupRequest(BaseModel):
    days_old: int = Field(settings.INCIDENT_CLEANUP_DAYS, ge=1, le=3650)


class CleanupResponse(BaseModel):
    count: int
    incident_ids: List[int]
    days_old: int


# ==================== IP Blocklist ====================


class BlockIPRequest(BaseModel):
    ip_address: str = Field(..., min_length=2, max_length=64)
    reason: Optional[str] = Field(None, max_length=1000)
    expires_at: Optional[datetime] = None


class UnblockIPRequest(BaseModel):
    ip_address: str = Field(..., min_length=2, max_length=64)


class UnblockIPResponse(BaseModel):
    ip_address: str
    count: int


class BlockedIPResponse(BaseModel):
    id: int
    ip_address: str
    reason: Optional[str] = None
    blocked_by: Optional[UUID] = None
    blocked_at: datetime
    expires_at: Optional[datetime] = None
    is_active: bool
    # Active and not yet expired at the time of the response
    is_effective: bool = False

    class Config:
        from_attributes = True


class BlockedIPListResponse(BaseModel):
    blocked_ips: List[BlockedIPResponse]
    total: int


# ==================== Trusted Users ====================


class TrustedUserCreate(BaseModel):
    user_id: Optional[UUID] = None
    ip_address: Optional[str] = Field(None, max_length=64)
    email: Optional[str] = Field(None, max_length=255)
    name: Optional[str] = Field(None, max_length=200)
    reason: Optional[str] = Field(None, max_length=1000)
    expires_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _require_target(self):
        if self.user_id is None and not self.ip_address and not self.email:
            raise ValueError("One of user_id, ip_address or email is required")
        return self


class TrustedUserResponse(BaseModel):
    id: int
    user_id: Optional[UUID] = None
    ip_address: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    reason: Optional[str] = None
    is_active: bool
    created_by: Optional[UUID] = None
    created_at: datetime
    expires_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TrustedUserListResponse(BaseModel):
    trusted_users: List[TrustedUserResponse]
    total: int


# ==================== Stats ====================


class SocStatsResponse(BaseModel):
    total_logs: int
    logs_last_24h: int
    failures_last_24h: int
    pinned: int
    incidents_by_status: Dict[str, int]
    open_incidents_by_priority: Dict[str, int]
    active_blocked_ips: int
    top_failing_ips: List[Dict[str, Any]]
