"""
Trusted Users

Accounts and addresses exempt from the IP blocklist. The first
registered account is added automatically.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from bastion.api.db.models import TrustedUser, User
from bastion.api.errors import NotFoundError, ValidationError
from bastion.api.soc.blocklist import as_utc, normalize_ip

logger = logging.getLogger(__name__)


class TrustedUserRegistry:
    def __init__(self, db: AsyncSession, clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _active(self):
        return (
            TrustedUser.is_active.is_(True),
            or_(TrustedUser.expires_at.is_(None), TrustedUser.expires_at > self._clock()),
        )

    async def add(
        self,
        user_id: Optional[UUID] = None,
        ip_address: Optional[str] = None,
        email: Optional[str] = None,
        name: Optional[str] = None,
        reason: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        created_by: Optional[UUID] = None,
    ) -> TrustedUser:
        if user_id is None and not ip_address and not email:
            raise ValidationError("One of user_id, ip_address or email is required")

        if ip_address:
            ip_address = normalize_ip(ip_address)

        expires_at = as_utc(expires_at)
        if expires_at is not None and expires_at <= self._clock():
            raise ValidationError("expires_at must be in the future")

        if user_id is not None:
            user = await self.db.get(User, user_id)
            if user is None:
                raise NotFoundError("User")
            email = email or user.email
            name = name or user.name

        entry = TrustedUser(
            user_id=user_id,
            ip_address=ip_address,
            email=email,
            name=name,
            reason=reason,
            is_active=True,
            created_by=created_by,
            created_at=self._clock(),
            expires_at=expires_at,
        )
        self.db.add(entry)
        await self.db.flush()
        logger.info(f"Trusted user added: {email or user_id or ip_address}")
        return entry

    async def remove(self, trusted_id: int) -> TrustedUser:
        """Deactivate an entry."""
        entry = await self.db.get(TrustedUser, trusted_id)
        if entry is None or not entry.is_active:
            raise NotFoundError("Trusted user")
        entry.is_active = False
        await self.db.flush()
        logger.info(f"Trusted user {trusted_id} removed")
        return entry

    async def list(self, include_inactive: bool = False) -> List[TrustedUser]:
        query = select(TrustedUser)
        if not include_inactive:
            query = query.where(TrustedUser.is_active.is_(True))
        result = await self.db.execute(query.order_by(TrustedUser.created_at.desc(), TrustedUser.id.desc()))
        return list(result.scalars().all())

    async def is_trusted_ip(self, ip_address: Optional[str]) -> bool:
        if not ip_address:
            return False
        try:
            ip = normalize_ip(ip_address)
        except ValidationError:
            return False
        result = await self.db.execute(
            select(TrustedUser.id).where(TrustedUser.ip_address == ip, *self._active()).limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def is_trusted_user(self, user_id: UUID) -> bool:
        result = await self.db.execute(
            select(TrustedUser.id).where(TrustedUser.user_id == user_id, *self._active()).limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def bootstrap_first_user(self, user: User, ip_address: Optional[str] = None) -> TrustedUser:
        """Trust the very first account, and the address it registered from."""
        try:
            ip = normalize_ip(ip_address) if ip_address else None
        except ValidationError:
            ip = None

        return await self.add(
            user_id=user.id,
            ip_address=ip,
            email=user.email,
            name=user.name,
            reason="First registered account",
            created_by=user.id,
        )
