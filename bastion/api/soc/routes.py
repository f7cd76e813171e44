"""
SOC Routes

API endpoints for security operations: audit log review, incident
triage, IP blocklist and trusted users.
"""

from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from bastion.api.access.gate import require_admin, require_page, require_permission
from bastion.api.audit.context import RequestContext
from bastion.api.audit.events import (
    AuditAction,
    AuditOutcome,
    AuditResource,
    BlocklistChangePayload,
    ExportPayload,
    IncidentChangePayload,
    PinChangePayload,
    TrustedUserChangePayload,
)
from bastion.api.audit.recorder import AuditRecorder, serialize_audit_log
from bastion.api.auth.principal import Principal
from bastion.api.config import settings
from bastion.api.dependencies import (
    get_audit_recorder,
    get_blocklist,
    get_broadcaster,
    get_metrics,
    get_request_context,
    get_soc_service,
    get_trusted_users,
)
from bastion.api.services.metrics import RequestMetrics
from bastion.api.soc.blocklist import IPBlocklist
from bastion.api.soc.export import (
    ExportFormat,
    audit_logs_document,
    audit_logs_to_csv,
    export_filename,
    parse_export_format,
    stats_document,
)
from bastion.api.soc.schemas import (
    AuditLogListResponse,
    AuditLogResponse,
    BlockedIPListResponse,
    BlockedIPResponse,
    BlockIPRequest,
    BulkFalsePositiveRequest,
    BulkFalsePositiveResponse,
    CleanupRequest,
    CleanupResponse,
    IncidentListResponse,
    IncidentUpdateRequest,
    MarkIncidentRequest,
    SocStatsResponse,
    TrustedUserCreate,
    TrustedUserListResponse,
    TrustedUserResponse,
    UnblockIPRequest,
    UnblockIPResponse,
)
from bastion.api.soc.service import AuditLogFilter, SocService
from bastion.api.soc.trusted import TrustedUserRegistry
from bastion.api.websocket.broadcaster import SocBroadcaster


router = APIRouter()

can_read = require_permission("soc", "read")
can_update = require_permission("soc", "update")
can_view_dashboard = require_page("soc", "view")


def _blocked_ip_response(blocklist: IPBlocklist, entry) -> BlockedIPResponse:
    response = BlockedIPResponse.model_validate(entry)
    response.is_effective = blocklist.is_effective(entry)
    return response


# ==================== Audit Logs ====================


@router.get("/audit-logs", response_model=AuditLogListResponse, summary="Search audit logs")
async def list_audit_logs(
    action: Optional[str] = None,
    resource: Optional[str] = None,
    status_: Optional[str] = Query(None, alias="status"),
    auth_method: Optional[str] = None,
    api_key_id: Optional[int] = None,
    api_key_owner_id: Optional[UUID] = None,
    correlation_id: Optional[str] = None,
    user_id: Optional[UUID] = None,
    ip_address: Optional[str] = None,
    incident_status: Optional[str] = None,
    priority: Optional[str] = None,
    is_pinned: Optional[bool] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=settings.AUDIT_LOG_MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    _: Principal = Depends(can_read),
    service: SocService = Depends(get_soc_service),
) -> AuditLogListResponse:
    """
    Filtered audit log page.

    Pinned entries come first (most recently pinned first), then the
    newest entries.
    """
    filters = AuditLogFilter(
        action=action,
        resource=resource,
        status=status_,
        auth_method=auth_method,
        api_key_id=api_key_id,
        api_key_owner_id=api_key_owner_id,
        correlation_id=correlation_id,
        user_id=user_id,
        ip_address=ip_address,
        incident_status=incident_status,
        priority=priority,
        is_pinned=is_pinned,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        offset=offset,
    )
    logs, total = await service.list_audit_logs(filters)
    return AuditLogListResponse(
        logs=[AuditLogResponse.model_validate(log) for log in logs],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post("/audit-logs/{log_id}/pin", response_model=AuditLogResponse, summary="Pin an audit log")
async def pin_audit_log(
    log_id: int,
    principal: Principal = Depends(can_update),
    service: SocService = Depends(get_soc_service),
    context: RequestContext = Depends(get_request_context),
    recorder: AuditRecorder = Depends(get_audit_recorder),
    broadcaster: SocBroadcaster = Depends(get_broadcaster),
) -> AuditLogResponse:
    entry = await service.pin(log_id, principal.id)

    await service.db.commit()
    recorder.record(
        context,
        AuditAction.PIN,
        AuditResource.AUDIT_LOG,
        AuditOutcome.success(resource_id=log_id, payload=PinChangePayload(audit_log_id=log_id, pinned=True)),
    )
    serialized = serialize_audit_log(entry)
    broadcaster.audit_log_update(serialized, "pinned")
    return AuditLogResponse(**serialized)


@router.post("/audit-logs/{log_id}/unpin", response_model=AuditLogResponse, summary="Unpin an audit log")
async def unpin_audit_log(
    log_id: int,
    principal: Principal = Depends(can_update),
    service: SocService = Depends(get_soc_service),
    context: RequestContext = Depends(get_request_context),
    recorder: AuditRecorder = Depends(get_audit_recorder),
    broadcaster: SocBroadcaster = Depends(get_broadcaster),
) -> AuditLogResponse:
    entry = await service.unpin(log_id)

    await service.db.commit()
    recorder.record(
        context,
        AuditAction.UNPIN,
        AuditResource.AUDIT_LOG,
        AuditOutcome.success(resource_id=log_id, payload=PinChangePayload(audit_log_id=log_id, pinned=False)),
    )
    serialized = serialize_audit_log(entry)
    broadcaster.audit_log_update(serialized, "unpinned")
    return AuditLogResponse(**serialized)


@router.post(
    "/audit-logs/{log_id}/mark-incident",
    response_model=AuditLogResponse,
    summary="Mark an audit log as incident",
)
async def mark_incident(
    log_id: int,
    data: MarkIncidentRequest,
    principal: Principal = Depends(can_update),
    service: SocService = Depends(get_soc_service),
    context: RequestContext = Depends(get_request_context),
    recorder: AuditRecorder = Depends(get_audit_recorder),
    broadcaster: SocBroadcaster = Depends(get_broadcaster),
) -> AuditLogResponse:
    previous = (await service.get_audit_log(log_id)).incident_status
    entry = await service.mark_incident(log_id, data.priority, data.analyst_notes, principal.id)

    await service.db.commit()
    recorder.record(
        context,
        AuditAction.UPDATE,
        AuditResource.INCIDENT,
        AuditOutcome.success(
            resource_id=log_id,
            payload=IncidentChangePayload(
                incident_ids=[log_id],
                previous_status=previous,
                new_status=entry.incident_status,
                priority=entry.priority,
            ),
        ),
    )
    serialized = serialize_audit_log(entry)
    broadcaster.incident_update(serialized, "opened" if previous is None else "updated")
    return AuditLogResponse(**serialized)


# ==================== Incidents ====================


@router.get("/incidents", response_model=IncidentListResponse, summary="List incidents")
async def list_incidents(
    limit: int = Query(100, ge=1, le=settings.AUDIT_LOG_MAX_PAGE_SIZE),
    status_: Optional[str] = Query(None, alias="status"),
    priority: Optional[str] = None,
    _: Principal = Depends(can_read),
    service: SocService = Depends(get_soc_service),
) -> IncidentListResponse:
    """Open incidents by default, most urgent first."""
    incidents, total = await service.list_incidents(limit=limit, status=status_, priority=priority)
    return IncidentListResponse(
        incidents=[AuditLogResponse.model_validate(i) for i in incidents],
        total=total,
    )


@router.put("/incidents/{incident_id}", response_model=AuditLogResponse, summary="Update an incident")
async def update_incident(
    incident_id: int,
    data: IncidentUpdateRequest,
    principal: Principal = Depends(can_update),
    service: SocService = Depends(get_soc_service),
    context: RequestContext = Depends(get_request_context),
    recorder: AuditRecorder = Depends(get_audit_recorder),
    broadcaster: SocBroadcaster = Depends(get_broadcaster),
) -> AuditLogResponse:
    """
    Triage an incident.

    Closed incidents (RESOLVED, FALSE_POSITIVE) never change status again (409).
    """
    previous = (await service.get_incident(incident_id)).incident_status
    entry = await service.update_incident(
        incident_id,
        status=data.incident_status,
        priority=data.priority,
        assigned_to=data.assigned_to,
        analyst_notes=data.analyst_notes,
        actor_id=principal.id,
    )

    await service.db.commit()
    recorder.record(
        context,
        AuditAction.UPDATE,
        AuditResource.INCIDENT,
        AuditOutcome.success(
            resource_id=incident_id,
            payload=IncidentChangePayload(
                incident_ids=[incident_id],
                previous_status=previous,
                new_status=entry.incident_status,
                priority=entry.priority,
            ),
        ),
    )
    serialized = serialize_audit_log(entry)
    broadcaster.incident_update(serialized, "updated")
    return AuditLogResponse(**serialized)


@router.post(
    "/incidents/bulk-false-positive",
    response_model=BulkFalsePositiveResponse,
    summary="Close several incidents as false positives",
)
async def bulk_false_positive(
    data: BulkFalsePositiveRequest,
    principal: Principal = Depends(can_update),
    service: SocService = Depends(get_soc_service),
    context: RequestContext = Depends(get_request_context),
    recorder: AuditRecorder = Depends(get_audit_recorder),
    broadcaster: SocBroadcaster = Depends(get_broadcaster),
) -> BulkFalsePositiveResponse:
    """Each id is handled independently; failures are reported, not raised."""
    result = await service.bulk_false_positive(data.incident_ids, data.analyst_notes, principal.id)

    await service.db.commit()
    recorder.record(
        context,
        AuditAction.UPDATE,
        AuditResource.INCIDENT,
        AuditOutcome.success(
            payload=IncidentChangePayload(
                incident_ids=result["updated"],
                new_status="FALSE_POSITIVE",
                failed_ids=[f["id"] for f in result["failed"]],
            ),
        ),
    )
    for incident_id in result["updated"]:
        broadcaster.incident_update(
            {"id": incident_id, "incident_status": "FALSE_POSITIVE"}, "updated"
        )

    return BulkFalsePositiveResponse(
        updated=result["updated"],
        failed=result["failed"],
        updated_count=len(result["updated"]),
    )


@router.post("/incidents/cleanup", response_model=CleanupResponse, summary="Close stale anomaly incidents")
async def cleanup_incidents(
    data: CleanupRequest,
    principal: Principal = Depends(can_update),
    service: SocService = Depends(get_soc_service),
    context: RequestContext = Depends(get_request_context),
    recorder: AuditRecorder = Depends(get_audit_recorder),
    broadcaster: SocBroadcaster = Depends(get_broadcaster),
) -> CleanupResponse:
    ids = await service.cleanup(data.days_old, principal.id)

    await service.db.commit()
    recorder.record(
        context,
        AuditAction.UPDATE,
        AuditResource.INCIDENT,
        AuditOutcome.success(
            payload=IncidentChangePayload(incident_ids=ids, previous_status="OPEN", new_status="FALSE_POSITIVE"),
            days_old=data.days_old,
        ),
    )
    for incident_id in ids:
        broadcaster.incident_update(
            {"id": incident_id, "incident_status": "FALSE_POSITIVE"}, "updated"
        )

    return CleanupResponse(count=len(ids), incident_ids=ids, days_old=data.days_old)


# ==================== IP Blocklist ====================


@router.get("/blocked-ips", response_model=BlockedIPListResponse, summary="List blocked IPs")
async def list_blocked_ips(
    include_expired: bool = True,
    _: Principal = Depends(can_read),
    blocklist: IPBlocklist = Depends(get_blocklist),
) -> BlockedIPListResponse:
    entries = await blocklist.list(include_expired=include_expired)
    return BlockedIPListResponse(
        blocked_ips=[_blocked_ip_response(blocklist, e) for e in entries],
        total=len(entries),
    )


@router.post(
    "/block-ip",
    response_model=BlockedIPResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Block an IP address",
)
async def block_ip(
    data: BlockIPRequest,
    principal: Principal = Depends(can_update),
    blocklist: IPBlocklist = Depends(get_blocklist),
    context: RequestContext = Depends(get_request_context),
    recorder: AuditRecorder = Depends(get_audit_recorder),
) -> BlockedIPResponse:
    """Block an address, permanently or until ``expires_at``."""
    entry = await blocklist.block(data.ip_address, data.reason, data.expires_at, principal.id)

    await blocklist.db.commit()
    recorder.record(
        context,
        AuditAction.CREATE,
        AuditResource.SECURITY,
        AuditOutcome.success(
            resource_id=entry.id,
            payload=BlocklistChangePayload(
                ip_address=entry.ip_address,
                blocked=True,
                expires_at=entry.expires_at,
                rows_affected=1,
            ),
        ),
    )
    return _blocked_ip_response(blocklist, entry)


@router.post("/unblock-ip", response_model=UnblockIPResponse, summary="Unblock an IP address")
async def unblock_ip(
    data: UnblockIPRequest,
    principal: Principal = Depends(can_update),
    blocklist: IPBlocklist = Depends(get_blocklist),
    context: RequestContext = Depends(get_request_context),
    recorder: AuditRecorder = Depends(get_audit_recorder),
) -> UnblockIPResponse:
    """Deactivate every active block for the address. A count of 0 is not an error."""
    count = await blocklist.unblock(data.ip_address)

    await blocklist.db.commit()
    recorder.record(
        context,
        AuditAction.DELETE,
        AuditResource.SECURITY,
        AuditOutcome.success(
            resource_id=data.ip_address,
            payload=BlocklistChangePayload(ip_address=data.ip_address, blocked=False, rows_affected=count),
        ),
    )
    return UnblockIPResponse(ip_address=data.ip_address, count=count)


# ==================== Trusted Users ====================


@router.get("/trusted-users", response_model=TrustedUserListResponse, summary="List trusted users")
async def list_trusted_users(
    _: Principal = Depends(require_admin),
    registry: TrustedUserRegistry = Depends(get_trusted_users),
) -> TrustedUserListResponse:
    entries = await registry.list()
    return TrustedUserListResponse(
        trusted_users=[TrustedUserResponse.model_validate(e) for e in entries],
        total=len(entries),
    )


@router.post(
    "/trusted-users",
    response_model=TrustedUserResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add a trusted user",
)
async def add_trusted_user(
    data: TrustedUserCreate,
    principal: Principal = Depends(require_admin),
    registry: TrustedUserRegistry = Depends(get_trusted_users),
    context: RequestContext = Depends(get_request_context),
    recorder: AuditRecorder = Depends(get_audit_recorder),
) -> TrustedUserResponse:
    entry = await registry.add(
        user_id=data.user_id,
        ip_address=data.ip_address,
        email=data.email,
        name=data.name,
        reason=data.reason,
        expires_at=data.expires_at,
        created_by=principal.id,
    )

    await registry.db.commit()
    recorder.record(
        context,
        AuditAction.CREATE,
        AuditResource.TRUSTED_USER,
        AuditOutcome.success(
            resource_id=entry.id,
            payload=TrustedUserChangePayload(trusted_user_id=entry.id, active=True),
        ),
    )
    return TrustedUserResponse.model_validate(entry)


@router.delete(
    "/trusted-users/{trusted_id}",
    response_model=TrustedUserResponse,
    summary="Remove a trusted user",
)
async def remove_trusted_user(
    trusted_id: int,
    _: Principal = Depends(require_admin),
    registry: TrustedUserRegistry = Depends(get_trusted_users),
    context: RequestContext = Depends(get_request_context),
    recorder: AuditRecorder = Depends(get_audit_recorder),
) -> TrustedUserResponse:
    entry = await registry.remove(trusted_id)

    await registry.db.commit()
    recorder.record(
        context,
        AuditAction.DELETE,
        AuditResource.TRUSTED_USER,
        AuditOutcome.success(
            resource_id=trusted_id,
            payload=TrustedUserChangePayload(trusted_user_id=trusted_id, active=False),
        ),
    )
    return TrustedUserResponse.model_validate(entry)


# ==================== Stats ====================


@router.get("/stats", response_model=SocStatsResponse, summary="SOC statistics")
async def soc_stats(
    _: Principal = Depends(can_view_dashboard),
    service: SocService = Depends(get_soc_service),
) -> SocStatsResponse:
    return SocStatsResponse(**await service.stats())


@router.get("/metrics", summary="Request and audit metrics")
async def soc_metrics(
    _: Principal = Depends(require_admin),
    metrics: RequestMetrics = Depends(get_metrics),
    recorder: AuditRecorder = Depends(get_audit_recorder),
    broadcaster: SocBroadcaster = Depends(get_broadcaster),
) -> Dict[str, Any]:
    snapshot = metrics.snapshot()
    snapshot["audit"]["pending"] = recorder.pending
    snapshot["websocket"] = broadcaster.manager.get_stats()
    return snapshot


# ==================== Export ====================


def _attachment(filename: str) -> Dict[str, str]:
    return {"Content-Disposition": f'attachment; filename="{filename}"'}


@router.get("/export", summary="Export audit logs as CSV or JSON")
async def export_audit_logs(
    format_: str = Query("json", alias="format"),
    action: Optional[str] = None,
    resource: Optional[str] = None,
    status_: Optional[str] = Query(None, alias="status"),
    user_id: Optional[UUID] = None,
    ip_address: Optional[str] = None,
    incident_status: Optional[str] = None,
    priority: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    _: Principal = Depends(can_read),
    service: SocService = Depends(get_soc_service),
    context: RequestContext = Depends(get_request_context),
    recorder: AuditRecorder = Depends(get_audit_recorder),
) -> Response:
    """
    Download every matching entry, newest first.

    At most ``AUDIT_EXPORT_MAX_ROWS`` entries are included; ``total`` in
    the JSON document is the uncapped match count.
    """
    export_format = parse_export_format(format_)
    applied = {
        "action": action,
        "resource": resource,
        "status": status_,
        "user_id": user_id,
        "ip_address": ip_address,
        "incident_status": incident_status,
        "priority": priority,
        "start_date": start_date,
        "end_date": end_date,
    }
    applied = {key: value for key, value in applied.items() if value is not None}
    filters = AuditLogFilter(**applied)

    logs, total = await service.export_audit_logs(filters, settings.AUDIT_EXPORT_MAX_ROWS)
    exported_at = service.now()
    filename = export_filename("audit-logs", export_format, exported_at)

    recorder.record(
        context,
        AuditAction.EXPORT,
        AuditResource.AUDIT_LOG,
        AuditOutcome.success(
            payload=ExportPayload(
                export_type="audit_logs",
                format=export_format.value,
                record_count=len(logs),
                filters=jsonable_encoder(applied),
            ),
        ),
    )

    if export_format == ExportFormat.CSV:
        return Response(
            content=audit_logs_to_csv(logs),
            media_type="text/csv",
            headers=_attachment(filename),
        )
    return JSONResponse(
        content=audit_logs_document(logs, total, jsonable_encoder(applied), exported_at),
        headers=_attachment(filename),
    )


@router.get("/export/stats", summary="Export SOC statistics as JSON")
async def export_stats(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    _: Principal = Depends(can_view_dashboard),
    service: SocService = Depends(get_soc_service),
    context: RequestContext = Depends(get_request_context),
    recorder: AuditRecorder = Depends(get_audit_recorder),
) -> Response:
    statistics = await service.stats()
    statistics["period"] = await service.period_stats(start_date, end_date)
    exported_at = service.now()

    recorder.record(
        context,
        AuditAction.EXPORT,
        AuditResource.AUDIT_LOG,
        AuditOutcome.success(
            payload=ExportPayload(
                export_type="stats",
                format=ExportFormat.JSON.value,
                filters=jsonable_encoder({"start_date": start_date, "end_date": end_date}),
            ),
        ),
    )
    return JSONResponse(
        content=jsonable_encoder(stats_document(statistics, exported_at, start_date, end_date)),
        headers=_attachment(export_filename("stats", ExportFormat.JSON, exported_at)),
    )
