"""
Tests for Access Tokens
=======================
"""

import uuid
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError

from bastion.api.auth.jwt import TOKEN_ISSUER, create_access_token, decode_access_token
from bastion.api.config import settings


def signed(**claims) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "iss": TOKEN_ISSUER,
        "sub": str(uuid.uuid4()),
        "iat": now,
        "exp": now + timedelta(minutes=5),
        "type": "access",
    }
    payload.update(claims)
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


class TestDecode:
    def test_claims(self):
        user_id = uuid.uuid4()

        claims = decode_access_token(create_access_token(user_id, "ops@bastion.dev", is_admin=True))

        assert claims.user_id == user_id
        assert claims.email == "ops@bastion.dev"
        assert claims.is_admin is True
        assert claims.expires_at - claims.issued_at == timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
        assert len(claims.token_id) == 32

    def test_token_ids_are_unique(self):
        user_id = uuid.uuid4()
        first = decode_access_token(create_access_token(user_id, "a@bastion.dev"))
        second = decode_access_token(create_access_token(user_id, "a@bastion.dev"))

        assert first.token_id != second.token_id

    def test_expired(self):
        token = create_access_token(uuid.uuid4(), "a@bastion.dev", expires_delta=timedelta(minutes=-1))

        with pytest.raises(ExpiredSignatureError):
            decode_access_token(token)

    @pytest.mark.parametrize(
        "claims",
        [
            {"iss": "someone-else"},
            {"type": "refresh"},
            {"sub": "not-a-uuid"},
        ],
    )
    def test_rejected_claims(self, claims):
        with pytest.raises(InvalidTokenError):
            decode_access_token(signed(**claims))

    def test_wrong_signature(self):
        token = jwt.encode(
            {"iss": TOKEN_ISSUER, "sub": str(uuid.uuid4()), "type": "access"},
            "another-secret",
            algorithm="HS256",
        )

        with pytest.raises(InvalidTokenError):
            decode_access_token(token)
