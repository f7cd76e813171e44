"""
Principal Resolution

Turns request credentials (bearer JWT or X-API-Key) into the
authenticated actor the rest of the core works with.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional
from uuid import UUID

from jwt.exceptions import ExpiredSignatureError, InvalidTokenError
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from bastion.api.audit.events import AuthMethod
from bastion.api.auth.api_keys import hash_api_key, looks_like_api_key
from bastion.api.auth.jwt import decode_access_token
from bastion.api.db.models import ApiKey, User
from bastion.api.errors import UnauthorizedError

logger = logging.getLogger(__name__)


class AuthenticationFailed(UnauthorizedError):
    """Credentials were missing or rejected; carries what the audit entry needs."""

    def __init__(
        self,
        reason: str,
        attempted_method: AuthMethod = AuthMethod.UNAUTHENTICATED,
        message: str = "Authentication required",
    ):
        super().__init__(message)
        self.reason = reason
        self.attempted_method = attempted_method


@dataclass
class Principal:
    """The authenticated actor behind a request."""

    user: User
    auth_method: AuthMethod
    api_key: Optional[ApiKey] = None

    @property
    def id(self) -> UUID:
        return self.user.id

    @property
    def email(self) -> str:
        return self.user.email

    @property
    def is_admin(self) -> bool:
        return bool(self.user.is_admin)

    @property
    def role_id(self) -> Optional[int]:
        return self.user.role_id

    @property
    def api_key_id(self) -> Optional[int]:
        return self.api_key.id if self.api_key else None


async def authenticate(
    db: AsyncSession,
    bearer_token: Optional[str] = None,
    api_key: Optional[str] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> Principal:
    """
    Resolve credentials into a Principal.

    The X-API-Key header takes precedence. A bearer value carrying an
    ``sk_`` key is treated as an API key as well.

    Raises:
        AuthenticationFailed: If no credentials were given or they are invalid
    """
    now = (clock or _utcnow)()

    if api_key:
        return await _from_api_key(db, api_key, now)

    if bearer_token:
        if looks_like_api_key(bearer_token):
            return await _from_api_key(db, bearer_token, now)
        return await _from_jwt(db, bearer_token)

    raise AuthenticationFailed("missing_credentials")


async def _from_jwt(db: AsyncSession, token: str) -> Principal:
    try:
        claims = decode_access_token(token)
    except ExpiredSignatureError:
        raise AuthenticationFailed(
            "token_expired", AuthMethod.JWT, "Invalid or expired token"
        )
    except InvalidTokenError:
        raise AuthenticationFailed(
            "invalid_token", AuthMethod.JWT, "Invalid or expired token"
        )

    result = await db.execute(select(User).where(User.id == claims.user_id))
    user = result.scalar_one_or_none()

    if not user or not user.is_active:
        raise AuthenticationFailed(
            "user_inactive", AuthMethod.JWT, "User not found or inactive"
        )

    return Principal(user=user, auth_method=AuthMethod.JWT)


async def _from_api_key(db: AsyncSession, raw_key: str, now: datetime) -> Principal:
    result = await db.execute(
        select(ApiKey).where(
            ApiKey.key_hash == hash_api_key(raw_key),
            ApiKey.is_active.is_(True),
            or_(ApiKey.expires_at.is_(None), ApiKey.expires_at > now),
        )
    )
    key = result.scalar_one_or_none()

    if key is None:
        raise AuthenticationFailed(
            "invalid_api_key", AuthMethod.API_KEY, "Invalid or expired API key"
        )

    result = await db.execute(select(User).where(User.id == key.user_id))
    owner = result.scalar_one_or_none()

    if not owner or not owner.is_active:
        raise AuthenticationFailed(
            "owner_inactive", AuthMethod.API_KEY, "Invalid or expired API key"
        )

    key.last_used_at = now
    logger.debug(f"API key {key.id} authenticated for {owner.email}")

    return Principal(user=owner, auth_method=AuthMethod.API_KEY, api_key=key)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)
