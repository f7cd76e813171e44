"""
Access Tokens

Signed, short-lived JWTs issued at login and accepted as bearer
credentials by the access gate and the monitoring socket.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

import jwt
from jwt.exceptions import InvalidTokenError

from bastion.api.config import settings

TOKEN_ISSUER = "bastion"
TOKEN_TYPE = "access"


@dataclass(frozen=True)
class TokenClaims:
    """Verified contents of an access token."""

    user_id: UUID
    email: str
    is_admin: bool
    issued_at: datetime
    expires_at: datetime
    token_id: str


def token_lifetime() -> timedelta:
    return timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)


def create_access_token(
    user_id: UUID,
    email: str,
    is_admin: bool = False,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Issue an access token.

    A negative ``expires_delta`` produces an already-expired token.
    """
    now = datetime.now(timezone.utc)
    payload = {
        "iss": TOKEN_ISSUER,
        "sub": str(user_id),
        "email": email,
        "is_admin": is_admin,
        "iat": now,
        "exp": now + (expires_delta if expires_delta is not None else token_lifetime()),
        "jti": uuid.uuid4().hex,
        "type": TOKEN_TYPE,
    }
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> TokenClaims:
    """
    Verify an access token and return its claims.

    Raises:
        ExpiredSignatureError: The token has expired
        InvalidTokenError: Bad signature or issuer, not an access token,
            or a subject that is not a user id
    """
    payload = jwt.decode(
        token,
        settings.JWT_SECRET_KEY,
        algorithms=[settings.JWT_ALGORITHM],
        issuer=TOKEN_ISSUER,
        options={"require": ["exp", "iat", "sub"]},
    )

    if payload.get("type") != TOKEN_TYPE:
        raise InvalidTokenError("Not an access token")

    try:
        user_id = UUID(payload["sub"])
    except (TypeError, ValueError):
        raise InvalidTokenError("Subject is not a user id")

    return TokenClaims(
        user_id=user_id,
        email=payload.get("email", ""),
        is_admin=bool(payload.get("is_admin", False)),
        issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
        expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        token_id=payload.get("jti", ""),
    )
