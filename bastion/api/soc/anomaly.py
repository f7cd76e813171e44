"""
Anomaly Heuristics

Rule-based detection evaluated on every new audit entry:

- Brute force: repeated failed authentication from one IP (CRITICAL)
- Repeated unauthorized access by one user (HIGH)
- One user active from many distinct IPs (MEDIUM)

SOC work itself (audit log review, incident handling, blocklist and
trusted-user management) never triggers a signal, and the per-user rules
skip admins and trusted users.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from sqlalchemy import distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from bastion.api.audit.events import (
    SOC_RESOURCES,
    AuditAction,
    AuditResource,
    AuditStatus,
)
from bastion.api.config import Settings, settings as default_settings
from bastion.api.db.models import AuditLog
from bastion.api.soc.incidents import PRIORITY_ORDER, Priority
from bastion.api.soc.trusted import TrustedUserRegistry

logger = logging.getLogger(__name__)

_AUTH_FAILURES = (AuditAction.AUTH_FAILED.value, AuditAction.LOGIN_FAILED.value)


@dataclass
class AnomalySignal:
    severity: Priority
    reason: str
    score: float
    rule: str


def is_soc_operation(entry: AuditLog) -> bool:
    """True for entries that describe SOC work rather than monitored activity."""
    if entry.resource in {r.value for r in SOC_RESOURCES}:
        return True
    if entry.resource == AuditResource.SECURITY.value and entry.action != AuditAction.BLOCKED_IP.value:
        return True
    path = entry.http_path or ""
    return "/soc/" in path or path.endswith("/soc")


class AnomalyDetector:
    """Evaluates the anomaly rules for one freshly written audit entry."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or default_settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def evaluate(
        self,
        db: AsyncSession,
        entry: AuditLog,
        actor_is_admin: bool = False,
    ) -> Optional[AnomalySignal]:
        """
        Run every rule and return the most severe signal, if any.

        The entry must already be flushed so it counts toward its own window.
        """
        if not self.config.ANOMALY_DETECTION_ENABLED or is_soc_operation(entry):
            return None

        signals: List[AnomalySignal] = []

        if entry.ip_address and entry.action in _AUTH_FAILURES:
            signal = await self._brute_force(db, entry.ip_address)
            if signal:
                signals.append(signal)

        if entry.user_id and not actor_is_admin and not await self._is_trusted(db, entry):
            if entry.action == AuditAction.UNAUTHORIZED_ACCESS.value:
                signal = await self._repeated_unauthorized(db, entry)
                if signal:
                    signals.append(signal)

            signal = await self._distinct_ips(db, entry)
            if signal:
                signals.append(signal)

        if not signals:
            return None

        strongest = max(signals, key=lambda s: (PRIORITY_ORDER[s.severity], s.score))
        logger.warning(
            f"Anomaly on audit entry {entry.id}: {strongest.rule} ({strongest.severity.value}) {strongest.reason}"
        )
        return strongest

    async def _is_trusted(self, db: AsyncSession, entry: AuditLog) -> bool:
        return await TrustedUserRegistry(db, self._clock).is_trusted_user(entry.user_id)

    async def _brute_force(self, db: AsyncSession, ip_address: str) -> Optional[AnomalySignal]:
        since = self._clock() - timedelta(minutes=self.config.ANOMALY_BRUTE_FORCE_WINDOW_MINUTES)
        result = await db.execute(
            select(func.count(AuditLog.id)).where(
                AuditLog.ip_address == ip_address,
                AuditLog.action.in_(_AUTH_FAILURES),
                AuditLog.status == AuditStatus.FAILURE.value,
                AuditLog.created_at >= since,
            )
        )
        attempts = result.scalar_one()

        if attempts < self.config.ANOMALY_BRUTE_FORCE_THRESHOLD:
            return None

        return AnomalySignal(
            severity=Priority.CRITICAL,
            reason=f"Potential brute force attack: {attempts} failed authentication attempts from {ip_address}",
            score=float(attempts),
            rule="brute_force",
        )

    async def _repeated_unauthorized(self, db: AsyncSession, entry: AuditLog) -> Optional[AnomalySignal]:
        since = self._clock() - timedelta(minutes=self.config.ANOMALY_WINDOW_MINUTES)
        result = await db.execute(
            select(func.count(AuditLog.id)).where(
                AuditLog.user_id == entry.user_id,
                AuditLog.action == AuditAction.UNAUTHORIZED_ACCESS.value,
                AuditLog.created_at >= since,
            )
        )
        attempts = result.scalar_one()

        if attempts < self.config.ANOMALY_UNAUTHORIZED_THRESHOLD:
            return None

        return AnomalySignal(
            severity=Priority.HIGH,
            reason=f"Repeated unauthorized access attempts: {attempts}",
            score=float(attempts * 10),
            rule="repeated_unauthorized",
        )

    async def _distinct_ips(self, db: AsyncSession, entry: AuditLog) -> Optional[AnomalySignal]:
        since = self._clock() - timedelta(minutes=self.config.ANOMALY_WINDOW_MINUTES)
        result = await db.execute(
            select(func.count(distinct(AuditLog.ip_address))).where(
                AuditLog.user_id == entry.user_id,
                AuditLog.ip_address.is_not(None),
                AuditLog.created_at >= since,
            )
        )
        ip_count = result.scalar_one()

        if ip_count <= self.config.ANOMALY_DISTINCT_IP_THRESHOLD:
            return None

        return AnomalySignal(
            severity=Priority.MEDIUM,
            reason=f"Multiple IP addresses detected: {ip_count}",
            score=float(ip_count),
            rule="distinct_ips",
        )
