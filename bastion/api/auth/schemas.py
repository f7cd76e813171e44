"""
Authentication Schemas

Request and response models for registration, login and API keys.
Emails are normalized to lower case on the way in.
"""

import re
from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, field_validator

_HAS_LETTER = re.compile(r"[A-Za-z]")
_HAS_DIGIT = re.compile(r"\d")


class _Credentials(BaseModel):
    email: EmailStr

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return value.lower()


class UserRegisterRequest(_Credentials):
    password: str = Field(..., min_length=8, max_length=100)
    name: Optional[str] = Field(None, max_length=200)

    @field_validator("password")
    @classmethod
    def password_strength(cls, value: str) -> str:
        if not (_HAS_LETTER.search(value) and _HAS_DIGIT.search(value)):
            raise ValueError("Password must contain at least one letter and one digit")
        return value


class UserLoginRequest(_Credentials):
    password: str


class UserResponse(BaseModel):
    id: UUID
    email: str
    name: Optional[str] = None
    is_active: bool
    is_admin: bool
    role_id: Optional[int] = None
    created_at: datetime
    last_login_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class AuthResponse(BaseModel):
    """Access token plus the authenticated user."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds
    user: UserResponse


class ApiKeyCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    # Must lie in the future; checked against the server clock on creation
    expires_at: Optional[datetime] = None


class ApiKeyResponse(BaseModel):
    """API key metadata. The raw key is never part of this."""

    id: int
    name: str
    is_active: bool
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class ApiKeyCreatedResponse(ApiKeyResponse):
    """Returned once, on creation: the only time the raw key is visible."""

    key: str
