"""
BASTION - Audit Recorder
========================

Persists one audit entry per guarded operation.

``record()`` is fire-and-forget: it snapshots the request context and
schedules the write on its own task and its own database session, so
the guarded operation never waits for, or fails because of, auditing.
Write failures are logged and counted, never raised.

Each write also:
- runs the anomaly heuristics against the fresh entry
- classifies the entry and opens an incident when it is a candidate
- applies the auto-pin rules
- broadcasts ``audit-log-update`` (plus ``security-event`` and
  ``incident-update`` for new incidents) to the SOC room
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Set

from sqlalchemy.ext.asyncio import AsyncSession

from bastion.api.audit.context import RequestContext, current_context
from bastion.api.audit.events import (
    AuditAction,
    AuditOutcome,
    AuditResource,
    AuthMethod,
    should_auto_pin,
)
from bastion.api.db.models import AuditLog
from bastion.api.db.session import open_session
from bastion.api.services.metrics import RequestMetrics
from bastion.api.soc.anomaly import AnomalyDetector
from bastion.api.soc.incidents import Priority, classify, max_priority
from bastion.api.soc.schemas import AuditLogResponse
from bastion.api.websocket.broadcaster import SocBroadcaster

logger = logging.getLogger(__name__)


def serialize_audit_log(entry: AuditLog) -> Dict[str, Any]:
    """JSON-ready representation used for broadcasts."""
    return AuditLogResponse.model_validate(entry).model_dump(mode="json")


class AuditRecorder:
    """Writes audit entries out of band of the request transaction."""

    def __init__(
        self,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
        broadcaster: Optional[SocBroadcaster] = None,
        detector: Optional[AnomalyDetector] = None,
        metrics: Optional[RequestMetrics] = None,
        enabled: bool = True,
        max_error_len: int = 500,
    ):
        self._session_factory = session_factory or open_session
        self.broadcaster = broadcaster
        self.detector = detector
        self.metrics = metrics
        self.enabled = enabled
        self.max_error_len = max_error_len
        self._tasks: Set[asyncio.Task] = set()

    # ==================== Public API ====================

    def record(
        self,
        context: Optional[RequestContext],
        action: AuditAction,
        resource: AuditResource,
        outcome: Optional[AuditOutcome] = None,
    ) -> None:
        """Schedule an audit write and return immediately."""
        if not self.enabled:
            return

        values, actor_is_admin = self._snapshot(context, action, resource, outcome)
        severity = outcome.severity if outcome else None

        try:
            task = asyncio.get_running_loop().create_task(
                self._safe_write(values, actor_is_admin, severity)
            )
        except RuntimeError:
            logger.error(f"No running loop, audit entry {action} on {resource} dropped")
            self._count(False)
            return

        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def write(
        self,
        context: Optional[RequestContext],
        action: AuditAction,
        resource: AuditResource,
        outcome: Optional[AuditOutcome] = None,
    ) -> Optional[int]:
        """
        Write an audit entry and wait for it.

        Returns:
            The new entry id, or None when auditing is disabled or the
            write failed
        """
        if not self.enabled:
            return None

        values, actor_is_admin = self._snapshot(context, action, resource, outcome)
        return await self._safe_write(
            values, actor_is_admin, outcome.severity if outcome else None
        )

    async def drain(self) -> None:
        """Wait for every scheduled write (shutdown, tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    # ==================== Internals ====================

    def _snapshot(
        self,
        context: Optional[RequestContext],
        action: AuditAction,
        resource: AuditResource,
        outcome: Optional[AuditOutcome],
    ):
        """Capture every column value now, while the request state is live."""
        context = context or current_context() or RequestContext.background()
        outcome = outcome or AuditOutcome.success()
        principal = context.principal

        error_message = outcome.error_message
        if error_message and len(error_message) > self.max_error_len:
            error_message = error_message[: self.max_error_len]

        values: Dict[str, Any] = {
            "action": AuditAction(action).value,
            "resource": AuditResource(resource).value,
            "resource_id": outcome.resource_id,
            "status": outcome.status.value,
            "error_message": error_message,
            "payload": outcome.payload.model_dump(mode="json") if outcome.payload else None,
            "details": outcome.details or None,
            "correlation_id": context.correlation_id,
            "ip_address": context.ip_address,
            "user_agent": (context.user_agent or "")[:500] or None,
            "http_method": context.http_method,
            "http_path": context.http_path,
            "response_time_ms": context.elapsed_ms(),
            "auth_method": AuthMethod.UNAUTHENTICATED.value,
        }

        actor_is_admin = False
        if principal is not None:
            actor_is_admin = principal.is_admin
            values.update(
                user_id=principal.id,
                user_email=principal.email,
                auth_method=principal.auth_method.value,
            )
            if principal.api_key is not None:
                values.update(
                    api_key_id=principal.api_key_id,
                    api_key_owner_id=principal.api_key.user_id,
                )

        return values, actor_is_admin

    async def _safe_write(
        self,
        values: Dict[str, Any],
        actor_is_admin: bool,
        severity: Optional[str],
    ) -> Optional[int]:
        try:
            entry_id = await self._write(values, actor_is_admin, severity)
        except Exception:
            logger.exception(
                f"Audit write failed for {values.get('action')} on {values.get('resource')} "
                f"(correlation_id={values.get('correlation_id')})"
            )
            self._count(False)
            return None

        self._count(True)
        return entry_id

    async def _write(
        self,
        values: Dict[str, Any],
        actor_is_admin: bool,
        severity: Optional[str],
    ) -> int:
        async with self._session_factory() as session:
            entry = AuditLog(**values)
            session.add(entry)
            await session.flush()

            signal = None
            if self.detector is not None:
                signal = await self.detector.evaluate(session, entry, actor_is_admin)

            classification = classify(
                entry.action,
                entry.resource,
                entry.status,
                anomaly_severity=signal.severity.value if signal else None,
                actor_is_admin=actor_is_admin,
                authenticated=entry.user_id is not None,
            )

            if classification is not None:
                if severity:
                    classification.priority = max_priority(
                        classification.priority, Priority(severity)
                    )
                entry.incident_status = classification.status.value
                entry.incident_source = classification.source.value
                entry.priority = classification.priority.value

            if signal is not None:
                entry.details = {
                    **(entry.details or {}),
                    "anomaly": {
                        "rule": signal.rule,
                        "severity": signal.severity.value,
                        "reason": signal.reason,
                        "score": signal.score,
                    },
                }

            pin_severity = classification.priority.value if classification else severity
            if should_auto_pin(
                AuditAction(entry.action),
                AuditResource(entry.resource),
                entry.status,
                AuthMethod(entry.auth_method),
                pin_severity,
            ):
                entry.is_pinned = True
                entry.pinned_at = datetime.now(timezone.utc)

            await session.flush()
            serialized = serialize_audit_log(entry)
            await session.commit()

        self._broadcast(serialized, classification)
        return serialized["id"]

    def _broadcast(self, serialized: Dict[str, Any], classification) -> None:
        if self.broadcaster is None:
            return

        self.broadcaster.audit_log_update(serialized, "created")
        if classification is not None:
            self.broadcaster.security_event(serialized, classification.priority.value)
            self.broadcaster.incident_update(serialized, "opened")

    def _count(self, success: bool) -> None:
        if self.metrics is not None:
            self.metrics.record_audit_write(success)
