"""
BASTION - Audit Event Vocabulary

Actions, resources, statuses, and the tagged payload structures that
audit entries carry. Fields the incident classifier depends on live in
typed columns; the payload is a discriminated union keyed by ``kind``;
``details`` is reserved for free-form diagnostics.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


# ============================================================
# Vocabulary
# ============================================================


class AuditAction(str, Enum):
    """What happened."""

    # Authentication
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    LOGIN_FAILED = "LOGIN_FAILED"
    REGISTER = "REGISTER"
    AUTH_FAILED = "AUTH_FAILED"
    AUTH_SUCCESS = "AUTH_SUCCESS"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"

    # Access control
    UNAUTHORIZED_ACCESS = "UNAUTHORIZED_ACCESS"
    BLOCKED_IP = "BLOCKED_IP"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    CSRF_ATTEMPT = "CSRF_ATTEMPT"
    ADMIN_ACCESS = "ADMIN_ACCESS"

    # Operations
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    READ = "READ"
    READ_LIST = "READ_LIST"
    EXPORT = "EXPORT"
    GRANT = "GRANT"
    REVOKE = "REVOKE"
    PIN = "PIN"
    UNPIN = "UNPIN"


class AuditResource(str, Enum):
    """What it happened to."""

    AUTH = "AUTH"
    USER = "USER"
    ROLE = "ROLE"
    PERMISSION = "PERMISSION"
    AUDIT_LOG = "AUDIT_LOG"
    INCIDENT = "INCIDENT"
    SECURITY = "SECURITY"
    TRUSTED_USER = "TRUSTED_USER"
    API_KEY = "API_KEY"
    SYSTEM = "SYSTEM"


class AuditStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    ERROR = "ERROR"


class AuthMethod(str, Enum):
    """Which authentication path produced the principal."""

    API_KEY = "API_KEY"
    JWT = "JWT"
    UNAUTHENTICATED = "UNAUTHENTICATED"


# Authentication/authorization failures always become incident candidates
AUTH_FAILURE_ACTIONS = frozenset({
    AuditAction.LOGIN_FAILED,
    AuditAction.AUTH_FAILED,
    AuditAction.TOKEN_EXPIRED,
    AuditAction.UNAUTHORIZED_ACCESS,
    AuditAction.BLOCKED_IP,
    AuditAction.RATE_LIMIT_EXCEEDED,
    AuditAction.CSRF_ATTEMPT,
})

# Resources whose entries describe SOC work itself
SOC_RESOURCES = frozenset({
    AuditResource.AUDIT_LOG,
    AuditResource.INCIDENT,
    AuditResource.TRUSTED_USER,
})


# ============================================================
# Tagged payloads
# ============================================================


class PermissionChangePayload(BaseModel):
    kind: Literal["permission_change"] = "permission_change"
    subject_type: Literal["user", "role"]
    subject_id: str
    permissions: List[str] = Field(default_factory=list)
    page: Optional[str] = None
    page_action: Optional[str] = None
    mode_id: Optional[str] = None
    outcome: Optional[str] = None
    preset: Optional[str] = None


class AccessDeniedPayload(BaseModel):
    kind: Literal["access_denied"] = "access_denied"
    reason: Literal["permission", "blocked_ip", "admin_required", "self_modification"]
    required: Optional[str] = None


class AuthFailurePayload(BaseModel):
    kind: Literal["auth_failure"] = "auth_failure"
    attempted_method: AuthMethod
    reason: str
    email: Optional[str] = None


class IncidentChangePayload(BaseModel):
    kind: Literal["incident_change"] = "incident_change"
    incident_ids: List[int] = Field(default_factory=list)
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    priority: Optional[str] = None
    failed_ids: List[int] = Field(default_factory=list)


class BlocklistChangePayload(BaseModel):
    kind: Literal["blocklist_change"] = "blocklist_change"
    ip_address: str
    blocked: bool
    expires_at: Optional[datetime] = None
    rows_affected: int = 0


class PinChangePayload(BaseModel):
    kind: Literal["pin_change"] = "pin_change"
    audit_log_id: int
    pinned: bool


class TrustedUserChangePayload(BaseModel):
    kind: Literal["trusted_user_change"] = "trusted_user_change"
    trusted_user_id: int
    active: bool


class ApiKeyChangePayload(BaseModel):
    kind: Literal["api_key_change"] = "api_key_change"
    api_key_id: int
    name: str
    active: bool


class ExportPayload(BaseModel):
    kind: Literal["export"] = "export"
    export_type: Literal["audit_logs", "stats"]
    format: Literal["csv", "json"]
    record_count: Optional[int] = None
    filters: Dict[str, Any] = Field(default_factory=dict)


AuditPayload = Annotated[
    Union[
        PermissionChangePayload,
        AccessDeniedPayload,
        AuthFailurePayload,
        IncidentChangePayload,
        BlocklistChangePayload,
        PinChangePayload,
        TrustedUserChangePayload,
        ApiKeyChangePayload,
        ExportPayload,
    ],
    Field(discriminator="kind"),
]

payload_adapter: TypeAdapter = TypeAdapter(AuditPayload)


def parse_payload(data: Optional[Dict[str, Any]]) -> Optional[BaseModel]:
    """Rebuild a stored payload into its typed model."""
    if not data:
        return None
    return payload_adapter.validate_python(data)


# ============================================================
# Outcome
# ============================================================


@dataclass
class AuditOutcome:
    """Result of the audited operation, as handed to the recorder."""

    status: AuditStatus = AuditStatus.SUCCESS
    resource_id: Optional[str] = None
    error_message: Optional[str] = None
    payload: Optional[BaseModel] = None
    details: Dict[str, Any] = field(default_factory=dict)
    # Severity hint for failures (LOW/MEDIUM/HIGH/CRITICAL)
    severity: Optional[str] = None

    @classmethod
    def success(cls, resource_id: Any = None, payload: Optional[BaseModel] = None, **details) -> "AuditOutcome":
        return cls(
            status=AuditStatus.SUCCESS,
            resource_id=None if resource_id is None else str(resource_id),
            payload=payload,
            details=details,
        )

    @classmethod
    def failure(
        cls,
        error_message: str,
        payload: Optional[BaseModel] = None,
        severity: Optional[str] = None,
        resource_id: Any = None,
        **details,
    ) -> "AuditOutcome":
        return cls(
            status=AuditStatus.FAILURE,
            resource_id=None if resource_id is None else str(resource_id),
            error_message=error_message,
            payload=payload,
            severity=severity,
            details=details,
        )

    @classmethod
    def error(cls, error_message: str, **details) -> "AuditOutcome":
        return cls(status=AuditStatus.ERROR, error_message=error_message, details=details)


# ============================================================
# Auto-pin rules
# ============================================================


_API_KEY_SENSITIVE_RESOURCES = frozenset({
    AuditResource.PERMISSION,
    AuditResource.ROLE,
    AuditResource.USER,
})

_WRITE_ACTIONS = frozenset({
    AuditAction.CREATE,
    AuditAction.UPDATE,
    AuditAction.DELETE,
    AuditAction.GRANT,
    AuditAction.REVOKE,
})


def should_auto_pin(
    action: AuditAction,
    resource: AuditResource,
    status: AuditStatus,
    auth_method: AuthMethod,
    severity: Optional[str] = None,
) -> bool:
    """Entries analysts always want at the top of the audit view."""
    if status == AuditStatus.SUCCESS:
        if resource == AuditResource.API_KEY and action == AuditAction.CREATE:
            return True
        if (
            auth_method == AuthMethod.API_KEY
            and resource in _API_KEY_SENSITIVE_RESOURCES
            and action in _WRITE_ACTIONS
        ):
            return True
        return False

    if action == AuditAction.AUTH_FAILED and severity == "CRITICAL":
        return True
    if action == AuditAction.UNAUTHORIZED_ACCESS and severity in ("HIGH", "CRITICAL"):
        return True
    return False
