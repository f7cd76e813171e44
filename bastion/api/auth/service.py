"""
Authentication Service

Business logic for accounts, passwords and API keys.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple
from uuid import UUID

import bcrypt
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from bastion.api.auth.api_keys import generate_api_key
from bastion.api.auth.jwt import create_access_token, token_lifetime
from bastion.api.auth.schemas import UserRegisterRequest
from bastion.api.db.models import ApiKey, User
from bastion.api.errors import ConflictError, NotFoundError, ValidationError
from bastion.api.soc.blocklist import as_utc
from bastion.api.soc.trusted import TrustedUserRegistry

logger = logging.getLogger(__name__)


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode(), password_hash.encode())
    except ValueError:
        # Malformed stored hash
        return False


class AuthService:
    """Authentication service with password, JWT and API key management."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def register(
        self, data: UserRegisterRequest, ip_address: Optional[str] = None
    ) -> Tuple[User, bool]:
        """
        Register a new user.

        The first account ever registered becomes an admin and a trusted
        user.

        Returns:
            Tuple of (user, is_first_user)

        Raises:
            ConflictError: If email already exists
        """
        email = data.email
        if await self.get_user_by_email(email):
            raise ConflictError("Email already registered")

        user_count = (await self.db.execute(select(func.count(User.id)))).scalar_one()
        is_first = user_count == 0

        user = User(
            email=email,
            password_hash=hash_password(data.password),
            name=data.name,
            is_active=True,
            is_admin=is_first,
        )
        self.db.add(user)
        await self.db.flush()
        await self.db.refresh(user)

        if is_first:
            await TrustedUserRegistry(self.db).bootstrap_first_user(user, ip_address)
            logger.warning(f"First account {email} registered as admin and trusted user")

        return user, is_first

    async def authenticate(self, email: str, password: str) -> Optional[User]:
        """
        Authenticate user with email/password.

        Returns:
            User if authenticated, None otherwise
        """
        user = await self.get_user_by_email(email.lower())

        if not user or not user.is_active:
            return None

        if not verify_password(password, user.password_hash):
            return None

        user.last_login_at = datetime.now(timezone.utc)
        await self.db.flush()
        return user

    def create_token(self, user: User) -> Tuple[str, int]:
        """
        Returns:
            Tuple of (access_token, expires_in_seconds)
        """
        token = create_access_token(user_id=user.id, email=user.email, is_admin=user.is_admin)
        return token, int(token_lifetime().total_seconds())

    async def get_user_by_email(self, email: str) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.email == email))
        return result.scalar_one_or_none()

    async def get_user_by_id(self, user_id: UUID) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    # ==================== API Keys ====================

    async def create_api_key(
        self, user: User, name: str, expires_at: Optional[datetime] = None
    ) -> Tuple[str, ApiKey]:
        """
        Create an API key for a user.

        Returns:
            Tuple of (raw_key, api_key). The raw key is not stored.
        """
        expires_at = as_utc(expires_at)
        if expires_at is not None and expires_at <= datetime.now(timezone.utc):
            raise ValidationError("expires_at must be in the future")

        raw_key, key_hash = generate_api_key()
        api_key = ApiKey(
            key_hash=key_hash,
            name=name,
            user_id=user.id,
            is_active=True,
            expires_at=expires_at,
        )
        self.db.add(api_key)
        await self.db.flush()
        await self.db.refresh(api_key)

        logger.info(f"API key {api_key.id} '{name}' created for {user.email}")
        return raw_key, api_key

    async def list_api_keys(self, user_id: UUID) -> List[ApiKey]:
        result = await self.db.execute(
            select(ApiKey).where(ApiKey.user_id == user_id).order_by(ApiKey.created_at.desc(), ApiKey.id.desc())
        )
        return list(result.scalars().all())

    async def deactivate_api_key(self, key_id: int, user_id: UUID, is_admin: bool = False) -> ApiKey:
        """
        Deactivate a key. Owners may deactivate their own keys, admins any key.

        Raises:
            NotFoundError: Unknown key, or a key the caller does not own
        """
        api_key = await self.db.get(ApiKey, key_id)
        if api_key is None or (api_key.user_id != user_id and not is_admin):
            raise NotFoundError("API key")

        api_key.is_active = False
        await self.db.flush()
        logger.info(f"API key {key_id} deactivated")
        return api_key
