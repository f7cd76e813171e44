"""
BASTION - SOC Service
=====================

Security-operations queries and incident triage over the audit log.

Audit rows are append-only; this service only touches their pin and
incident fields. All writes flush into the caller's unit of work.

Usage:
    service = SocService(db)
    logs, total = await service.list_audit_logs(AuditLogFilter(status="FAILURE"))
    await service.update_incident(42, status="RESOLVED", actor_id=analyst.id)
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from bastion.api.audit.events import AuditStatus
from bastion.api.db.models import AuditLog
from bastion.api.errors import AppError, ConflictError, NotFoundError
from bastion.api.soc.blocklist import IPBlocklist
from bastion.api.soc.incidents import (
    OPEN_STATES,
    TERMINAL_STATES,
    IncidentSource,
    IncidentStatus,
    Priority,
    ensure_transition,
    is_terminal,
    parse_priority,
    parse_status,
    priority_rank,
)

logger = logging.getLogger(__name__)


@dataclass
class AuditLogFilter:
    """Filters for the audit log listing. Unset fields do not filter."""

    action: Optional[str] = None
    resource: Optional[str] = None
    status: Optional[str] = None
    auth_method: Optional[str] = None
    api_key_id: Optional[int] = None
    api_key_owner_id: Optional[UUID] = None
    correlation_id: Optional[str] = None
    user_id: Optional[UUID] = None
    ip_address: Optional[str] = None
    incident_status: Optional[str] = None
    priority: Optional[str] = None
    is_pinned: Optional[bool] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    limit: int = 100
    offset: int = 0

    def conditions(self) -> list:
        conds = []
        for column in (
            "action",
            "resource",
            "status",
            "auth_method",
            "api_key_id",
            "api_key_owner_id",
            "correlation_id",
            "user_id",
            "ip_address",
            "incident_status",
            "priority",
            "is_pinned",
        ):
            value = getattr(self, column)
            if value is not None:
                conds.append(getattr(AuditLog, column) == value)

        if self.start_date is not None:
            conds.append(AuditLog.created_at >= self.start_date)
        if self.end_date is not None:
            conds.append(AuditLog.created_at <= self.end_date)
        return conds


class SocService:
    """Audit log review, pinning and incident triage."""

    def __init__(self, db: AsyncSession, clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        return self._clock()

    # ==================== Audit Logs ====================

    async def list_audit_logs(self, filters: Optional[AuditLogFilter] = None) -> Tuple[List[AuditLog], int]:
        """
        Filtered audit log page.

        Ordering: pinned entries first (most recently pinned first), then
        newest first.
        """
        filters = filters or AuditLogFilter()
        conds = filters.conditions()

        total = (
            await self.db.execute(select(func.count(AuditLog.id)).where(*conds))
        ).scalar_one()

        result = await self.db.execute(
            select(AuditLog)
            .where(*conds)
            .order_by(
                AuditLog.is_pinned.desc(),
                AuditLog.pinned_at.desc(),
                AuditLog.created_at.desc(),
                AuditLog.id.desc(),
            )
            .limit(filters.limit)
            .offset(filters.offset)
        )
        return list(result.scalars().all()), total

    async def export_audit_logs(
        self, filters: AuditLogFilter, max_rows: int
    ) -> Tuple[List[AuditLog], int]:
        """Matching entries newest first, capped at ``max_rows``, with the uncapped total."""
        conds = filters.conditions()
        total = (
            await self.db.execute(select(func.count(AuditLog.id)).where(*conds))
        ).scalar_one()
        result = await self.db.execute(
            select(AuditLog)
            .where(*conds)
            .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            .limit(max_rows)
        )
        return list(result.scalars().all()), total

    async def get_audit_log(self, log_id: int) -> AuditLog:
        entry = await self.db.get(AuditLog, log_id, populate_existing=True)
        if entry is None:
            raise NotFoundError("Audit log")
        return entry

    async def pin(self, log_id: int, actor_id: Optional[UUID] = None) -> AuditLog:
        entry = await self.get_audit_log(log_id)
        if not entry.is_pinned:
            entry.is_pinned = True
            entry.pinned_at = self._clock()
            entry.pinned_by = actor_id
            await self.db.flush()
        return entry

    async def unpin(self, log_id: int) -> AuditLog:
        entry = await self.get_audit_log(log_id)
        entry.is_pinned = False
        entry.pinned_at = None
        entry.pinned_by = None
        await self.db.flush()
        return entry

    # ==================== Incidents ====================

    async def mark_incident(
        self,
        log_id: int,
        priority: str = Priority.MEDIUM.value,
        analyst_notes: Optional[str] = None,
        actor_id: Optional[UUID] = None,
    ) -> AuditLog:
        """
        Promote an audit entry to an incident by hand.

        An entry that already is an open incident keeps its source and
        gets the new priority.

        Raises:
            NotFoundError: Unknown audit entry
            ConflictError: The entry is a closed incident
        """
        target_priority = parse_priority(priority)
        entry = await self.get_audit_log(log_id)

        if is_terminal(entry.incident_status):
            raise ConflictError(
                f"Incident is {entry.incident_status} and cannot be reopened",
                details={"current_status": entry.incident_status},
            )

        if entry.incident_status is None:
            entry.incident_status = IncidentStatus.OPEN.value
            entry.incident_source = IncidentSource.MANUAL.value
        entry.priority = target_priority.value
        if analyst_notes is not None:
            entry.analyst_notes = analyst_notes

        await self.db.flush()
        logger.info(f"Audit log {log_id} marked as incident ({target_priority.value}) by {actor_id}")
        return entry

    async def get_incident(self, incident_id: int) -> AuditLog:
        entry = await self.db.get(AuditLog, incident_id, populate_existing=True)
        if entry is None or entry.incident_status is None:
            raise NotFoundError("Incident")
        return entry

    async def list_incidents(
        self,
        limit: int = 100,
        status: Optional[str] = None,
        priority: Optional[str] = None,
    ) -> Tuple[List[AuditLog], int]:
        """Incidents by priority (most urgent first), then newest first. Defaults to open ones."""
        if status is None:
            statuses = [s.value for s in OPEN_STATES]
        else:
            statuses = [parse_status(status).value]

        conds = [AuditLog.incident_status.in_(statuses)]
        if priority is not None:
            conds.append(AuditLog.priority == parse_priority(priority).value)

        total = (
            await self.db.execute(select(func.count(AuditLog.id)).where(*conds))
        ).scalar_one()

        result = await self.db.execute(
            select(AuditLog)
            .where(*conds)
            .order_by(priority_rank().desc(), AuditLog.created_at.desc(), AuditLog.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all()), total

    async def update_incident(
        self,
        incident_id: int,
        status: Optional[str] = None,
        priority: Optional[str] = None,
        assigned_to: Optional[UUID] = None,
        analyst_notes: Optional[str] = None,
        actor_id: Optional[UUID] = None,
    ) -> AuditLog:
        """
        Apply a triage update.

        Status changes follow the lifecycle: closed incidents never
        change status again. Closing stamps ``resolved_at``/``resolved_by``.

        Raises:
            NotFoundError: Unknown id or not an incident
            ConflictError: Status change on a closed incident
            ValidationError: Unknown status or priority
        """
        target = parse_status(status) if status is not None else None
        target_priority = parse_priority(priority) if priority is not None else None

        entry = await self.get_incident(incident_id)

        if target is not None:
            ensure_transition(entry.incident_status, target)
            entry.incident_status = target.value
            if target in TERMINAL_STATES:
                entry.resolved_at = self._clock()
                entry.resolved_by = actor_id

        if target_priority is not None:
            entry.priority = target_priority.value
        if assigned_to is not None:
            entry.assigned_to = assigned_to
        if analyst_notes is not None:
            entry.analyst_notes = analyst_notes

        await self.db.flush()
        logger.info(f"Incident {incident_id} updated by {actor_id}: status={entry.incident_status}")
        return entry

    async def bulk_false_positive(
        self,
        incident_ids: List[int],
        analyst_notes: Optional[str] = None,
        actor_id: Optional[UUID] = None,
    ) -> Dict[str, Any]:
        """
        Close each incident as FALSE_POSITIVE independently.

        Returns:
            {"updated": [ids], "failed": [{"id", "reason"}]}
        """
        updated: List[int] = []
        failed: List[Dict[str, Any]] = []

        for incident_id in dict.fromkeys(incident_ids):
            try:
                await self.update_incident(
                    incident_id,
                    status=IncidentStatus.FALSE_POSITIVE.value,
                    analyst_notes=analyst_notes,
                    actor_id=actor_id,
                )
            except AppError as e:
                failed.append({"id": incident_id, "reason": e.message})
            else:
                updated.append(incident_id)

        logger.info(f"Bulk false positive: {len(updated)} updated, {len(failed)} failed")
        return {"updated": updated, "failed": failed}

    async def cleanup(self, days_old: int = 7, actor_id: Optional[UUID] = None) -> List[int]:
        """Close stale OPEN anomaly incidents as FALSE_POSITIVE. Returns affected ids."""
        now = self._clock()
        cutoff = now - timedelta(days=days_old)

        result = await self.db.execute(
            select(AuditLog).where(
                AuditLog.incident_status == IncidentStatus.OPEN.value,
                AuditLog.incident_source == IncidentSource.ANOMALY.value,
                AuditLog.created_at < cutoff,
            )
        )
        entries = list(result.scalars().all())

        for entry in entries:
            entry.incident_status = IncidentStatus.FALSE_POSITIVE.value
            entry.resolved_at = now
            entry.resolved_by = actor_id
            note = f"Closed by cleanup after {days_old} days without triage"
            entry.analyst_notes = f"{entry.analyst_notes}\n{note}" if entry.analyst_notes else note

        await self.db.flush()
        ids = [entry.id for entry in entries]
        logger.info(f"Incident cleanup closed {len(ids)} anomaly incidents older than {days_old} days")
        return ids

    # ==================== Stats ====================

    async def stats(self) -> Dict[str, Any]:
        since = self._clock() - timedelta(hours=24)

        async def count(*conds) -> int:
            return (await self.db.execute(select(func.count(AuditLog.id)).where(*conds))).scalar_one()

        by_status = await self.db.execute(
            select(AuditLog.incident_status, func.count(AuditLog.id))
            .where(AuditLog.incident_status.is_not(None))
            .group_by(AuditLog.incident_status)
        )
        by_priority = await self.db.execute(
            select(AuditLog.priority, func.count(AuditLog.id))
            .where(
                AuditLog.incident_status.in_([s.value for s in OPEN_STATES]),
                AuditLog.priority.is_not(None),
            )
            .group_by(AuditLog.priority)
        )
        failures = func.count(AuditLog.id).label("failures")
        top_ips = await self.db.execute(
            select(AuditLog.ip_address, failures)
            .where(
                AuditLog.status == AuditStatus.FAILURE.value,
                AuditLog.ip_address.is_not(None),
                AuditLog.created_at >= since,
            )
            .group_by(AuditLog.ip_address)
            .order_by(failures.desc())
            .limit(10)
        )

        return {
            "total_logs": await count(),
            "logs_last_24h": await count(AuditLog.created_at >= since),
            "failures_last_24h": await count(
                AuditLog.status == AuditStatus.FAILURE.value,
                AuditLog.created_at >= since,
            ),
            "pinned": await count(AuditLog.is_pinned.is_(True)),
            "incidents_by_status": {status: n for status, n in by_status.all()},
            "open_incidents_by_priority": {priority: n for priority, n in by_priority.all()},
            "active_blocked_ips": await IPBlocklist(self.db, self._clock).count_effective(),
            "top_failing_ips": [{"ip_address": ip, "failures": n} for ip, n in top_ips.all()],
        }

    async def period_stats(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Counts over an optional created_at window (open ended when unset)."""
        conds = AuditLogFilter(start_date=start_date, end_date=end_date).conditions()

        by_status = await self.db.execute(
            select(AuditLog.status, func.count(AuditLog.id)).where(*conds).group_by(AuditLog.status)
        )
        by_action = await self.db.execute(
            select(AuditLog.action, func.count(AuditLog.id)).where(*conds).group_by(AuditLog.action)
        )
        by_resource = await self.db.execute(
            select(AuditLog.resource, func.count(AuditLog.id)).where(*conds).group_by(AuditLog.resource)
        )
        incidents = await self.db.execute(
            select(func.count(AuditLog.id)).where(*conds, AuditLog.incident_status.is_not(None))
        )

        status_counts = {status: n for status, n in by_status.all()}
        return {
            "total": sum(status_counts.values()),
            "by_status": status_counts,
            "by_action": {action: n for action, n in by_action.all()},
            "by_resource": {resource: n for resource, n in by_resource.all()},
            "incidents": incidents.scalar_one(),
        }
