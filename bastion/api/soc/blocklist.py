"""
IP Blocklist

Temporal blocklist feeding request-time enforcement.

Rows are never deleted: unblocking deactivates them. Expiry is lazy,
so an entry stops applying the moment ``expires_at`` passes without any
sweep; ``is_blocked`` evaluates that condition in SQL.
"""

import ipaddress
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bastion.api.db.models import BlockedIP
from bastion.api.errors import ValidationError

logger = logging.getLogger(__name__)


def normalize_ip(ip_address: str) -> str:
    """Canonical text form of an IPv4/IPv6 address."""
    try:
        return str(ipaddress.ip_address(ip_address.strip()))
    except ValueError:
        raise ValidationError(f"Invalid IP address '{ip_address}'")


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive values; everything is stored in UTC
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class IPBlocklist:
    """Block, unblock and check IP addresses."""

    def __init__(self, db: AsyncSession, clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _effective(self, now: datetime):
        return (
            BlockedIP.is_active.is_(True),
            or_(BlockedIP.expires_at.is_(None), BlockedIP.expires_at > now),
        )

    async def block(
        self,
        ip_address: str,
        reason: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        blocked_by: Optional[UUID] = None,
    ) -> BlockedIP:
        """
        Add a block entry. Always inserts a new row.

        Raises:
            ValidationError: Invalid address or an expiry not in the future
        """
        ip = normalize_ip(ip_address)
        now = self._clock()

        expires_at = as_utc(expires_at)
        if expires_at is not None and expires_at <= now:
            raise ValidationError("expires_at must be in the future")

        entry = BlockedIP(
            ip_address=ip,
            reason=reason,
            blocked_by=blocked_by,
            blocked_at=now,
            expires_at=expires_at,
            is_active=True,
        )
        self.db.add(entry)
        await self.db.flush()

        until = expires_at.isoformat() if expires_at else "permanently"
        logger.warning(f"Blocked IP {ip} until {until}: {reason or 'no reason given'}")
        return entry

    async def unblock(self, ip_address: str) -> int:
        """Deactivate every active entry for the address. Returns how many changed."""
        ip = normalize_ip(ip_address)
        result = await self.db.execute(
            update(BlockedIP)
            .where(BlockedIP.ip_address == ip, BlockedIP.is_active.is_(True))
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        count = result.rowcount or 0
        if count:
            logger.info(f"Unblocked IP {ip} ({count} entries)")
        return count

    async def is_blocked(self, ip_address: Optional[str]) -> bool:
        if not ip_address:
            return False
        try:
            ip = normalize_ip(ip_address)
        except ValidationError:
            return False

        result = await self.db.execute(
            select(BlockedIP.id)
            .where(BlockedIP.ip_address == ip, *self._effective(self._clock()))
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def list(self, include_expired: bool = True) -> List[BlockedIP]:
        """Entries, newest first. Without include_expired only effective ones."""
        query = select(BlockedIP)
        if not include_expired:
            query = query.where(*self._effective(self._clock()))
        result = await self.db.execute(
            query.order_by(BlockedIP.blocked_at.desc(), BlockedIP.id.desc())
        )
        return list(result.scalars().all())

    async def count_effective(self) -> int:
        result = await self.db.execute(
            select(func.count(BlockedIP.id)).where(*self._effective(self._clock()))
        )
        return result.scalar_one()

    def is_effective(self, entry: BlockedIP) -> bool:
        if not entry.is_active:
            return False
        expires_at = as_utc(entry.expires_at)
        return expires_at is None or expires_at > self._clock()
