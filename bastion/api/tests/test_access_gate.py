"""
Access Gate Tests

Request gating in order: IP blocklist, authentication, authorization.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import AsyncClient
from sqlalchemy.exc import OperationalError

from bastion.api.access.gate import is_caller_blocked
from bastion.api.auth.api_keys import generate_api_key
from bastion.api.auth.jwt import create_access_token
from bastion.api.db.models import ApiKey, BlockedIP
from bastion.api.soc.blocklist import IPBlocklist
from bastion.api.soc.trusted import TrustedUserRegistry
from bastion.api.tests.conftest import headers_for, make_user


PROTECTED = "/api/v1/permissions/my-permissions"
GUARDED = "/api/v1/permissions/"
ATTACKER_IP = "203.0.113.7"


# ==================== IP blocklist ====================


class TestBlocklistEnforcement:
    """Blocked addresses are rejected before credentials are checked."""

    @pytest.mark.asyncio
    async def test_blocked_ip_rejected_with_generic_403(
        self, async_client: AsyncClient, app, db_session, test_user, helpers
    ):
        await IPBlocklist(db_session).block(ATTACKER_IP, reason="scanner")
        await db_session.commit()

        response = await async_client.get(PROTECTED, headers=headers_for(test_user, ATTACKER_IP))

        helpers.assert_error(response, 403, "FORBIDDEN")
        assert response.json()["message"] == "Access denied"

        await helpers.settle(app)
        entries = await helpers.audit_logs(db_session, action="BLOCKED_IP")
        assert len(entries) == 1
        assert entries[0].resource_id == ATTACKER_IP
        assert entries[0].payload["reason"] == "blocked_ip"
        # Rejected before authentication, so no actor is attached
        assert entries[0].user_id is None

    @pytest.mark.asyncio
    async def test_blocked_ip_checked_before_authentication(
        self, async_client: AsyncClient, app, db_session, helpers
    ):
        await IPBlocklist(db_session).block(ATTACKER_IP)
        await db_session.commit()

        response = await async_client.get(PROTECTED, headers={"X-Forwarded-For": ATTACKER_IP})

        helpers.assert_error(response, 403, "FORBIDDEN")

        await helpers.settle(app)
        assert await helpers.audit_logs(db_session, action="AUTH_FAILED") == []

    @pytest.mark.asyncio
    async def test_other_addresses_unaffected(self, async_client: AsyncClient, db_session, test_user):
        await IPBlocklist(db_session).block(ATTACKER_IP)
        await db_session.commit()

        response = await async_client.get(PROTECTED, headers=headers_for(test_user, "198.51.100.20"))

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_expired_block_no_longer_applies(self, async_client: AsyncClient, db_session, test_user):
        now = datetime.now(timezone.utc)
        db_session.add(
            BlockedIP(
                ip_address=ATTACKER_IP,
                reason="temporary",
                blocked_at=now - timedelta(hours=2),
                expires_at=now - timedelta(hours=1),
                is_active=True,
            )
        )
        await db_session.commit()

        response = await async_client.get(PROTECTED, headers=headers_for(test_user, ATTACKER_IP))

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_unblock_takes_effect_immediately(
        self, async_client: AsyncClient, db_session, test_user
    ):
        blocklist = IPBlocklist(db_session)
        await blocklist.block(ATTACKER_IP)
        await db_session.commit()

        headers = headers_for(test_user, ATTACKER_IP)
        assert (await async_client.get(PROTECTED, headers=headers)).status_code == 403

        assert await blocklist.unblock(ATTACKER_IP) == 1
        await db_session.commit()

        assert (await async_client.get(PROTECTED, headers=headers)).status_code == 200

    @pytest.mark.asyncio
    async def test_trusted_ip_is_exempt(self, async_client: AsyncClient, db_session, test_user):
        await IPBlocklist(db_session).block(ATTACKER_IP)
        await TrustedUserRegistry(db_session).add(ip_address=ATTACKER_IP, reason="office gateway")
        await db_session.commit()

        response = await async_client.get(PROTECTED, headers=headers_for(test_user, ATTACKER_IP))

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_trusted_user_passes_blocked_ip(
        self, async_client: AsyncClient, db_session, test_user, other_user
    ):
        await IPBlocklist(db_session).block(ATTACKER_IP)
        await TrustedUserRegistry(db_session).add(user_id=test_user.id, reason="on-call analyst")
        await db_session.commit()

        trusted = await async_client.get(PROTECTED, headers=headers_for(test_user, ATTACKER_IP))
        untrusted = await async_client.get(PROTECTED, headers=headers_for(other_user, ATTACKER_IP))
        anonymous = await async_client.get(PROTECTED, headers={"X-Forwarded-For": ATTACKER_IP})

        assert trusted.status_code == 200
        assert untrusted.status_code == 403
        assert anonymous.status_code == 403

    @pytest.mark.asyncio
    async def test_failed_lookup_lets_request_through(self):
        db = MagicMock()
        db.execute = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("database down")))
        db.rollback = AsyncMock()

        assert await is_caller_blocked(db, ATTACKER_IP) is False
        db.rollback.assert_awaited_once()


# ==================== Authentication ====================


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_missing_credentials(self, async_client: AsyncClient, app, db_session, helpers):
        response = await async_client.get(PROTECTED)

        helpers.assert_error(response, 401, "UNAUTHORIZED")
        assert response.headers["WWW-Authenticate"] == "Bearer"

        await helpers.settle(app)
        entries = await helpers.audit_logs(db_session, action="AUTH_FAILED")
        assert len(entries) == 1
        assert entries[0].payload["reason"] == "missing_credentials"
        assert entries[0].auth_method == "UNAUTHENTICATED"
        assert entries[0].status == "FAILURE"

    @pytest.mark.asyncio
    async def test_invalid_token(self, async_client: AsyncClient, app, db_session, helpers):
        response = await async_client.get(PROTECTED, headers={"Authorization": "Bearer not-a-jwt"})

        helpers.assert_error(response, 401, "UNAUTHORIZED")
        assert response.json()["message"] == "Invalid or expired token"

        await helpers.settle(app)
        entries = await helpers.audit_logs(db_session, action="AUTH_FAILED")
        assert entries[0].payload["reason"] == "invalid_token"
        assert entries[0].payload["attempted_method"] == "JWT"

    @pytest.mark.asyncio
    async def test_expired_token(self, async_client: AsyncClient, app, db_session, test_user, helpers):
        token = create_access_token(
            user_id=test_user.id,
            email=test_user.email,
            expires_delta=timedelta(minutes=-5),
        )

        response = await async_client.get(PROTECTED, headers={"Authorization": f"Bearer {token}"})

        helpers.assert_error(response, 401, "UNAUTHORIZED")

        await helpers.settle(app)
        entries = await helpers.audit_logs(db_session, action="AUTH_FAILED")
        assert entries[0].payload["reason"] == "token_expired"

    @pytest.mark.asyncio
    async def test_inactive_user_rejected(self, async_client: AsyncClient, db_session, helpers):
        inactive = await make_user(db_session, "inactive@bastion.dev", is_active=False)

        response = await async_client.get(PROTECTED, headers=headers_for(inactive))

        helpers.assert_error(response, 401, "UNAUTHORIZED")

    @pytest.mark.asyncio
    async def test_api_key_header(self, async_client: AsyncClient, app, db_session, test_user, helpers):
        raw_key, key_hash = generate_api_key()
        db_session.add(ApiKey(key_hash=key_hash, name="ci", user_id=test_user.id))
        await db_session.commit()

        response = await async_client.get(PROTECTED, headers={"X-API-Key": raw_key})

        assert response.status_code == 200
        assert response.json()["user_id"] == str(test_user.id)

    @pytest.mark.asyncio
    async def test_api_key_as_bearer(self, async_client: AsyncClient, db_session, test_user):
        raw_key, key_hash = generate_api_key()
        db_session.add(ApiKey(key_hash=key_hash, name="ci", user_id=test_user.id))
        await db_session.commit()

        response = await async_client.get(PROTECTED, headers={"Authorization": f"Bearer {raw_key}"})

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_expired_api_key_rejected(self, async_client: AsyncClient, app, db_session, test_user, helpers):
        raw_key, key_hash = generate_api_key()
        db_session.add(
            ApiKey(
                key_hash=key_hash,
                name="old",
                user_id=test_user.id,
                expires_at=datetime.now(timezone.utc) - timedelta(days=1),
            )
        )
        await db_session.commit()

        response = await async_client.get(PROTECTED, headers={"X-API-Key": raw_key})

        helpers.assert_error(response, 401, "UNAUTHORIZED")

        await helpers.settle(app)
        entries = await helpers.audit_logs(db_session, action="AUTH_FAILED")
        assert entries[0].payload["attempted_method"] == "API_KEY"
        assert entries[0].payload["reason"] == "invalid_api_key"


# ==================== Authorization ====================


class TestAuthorization:
    @pytest.mark.asyncio
    async def test_missing_permission_denied_and_audited(
        self, async_client: AsyncClient, app, db_session, test_user, auth_headers, helpers
    ):
        response = await async_client.get(GUARDED, headers=auth_headers)

        helpers.assert_error(response, 403, "FORBIDDEN")

        await helpers.settle(app)
        entries = await helpers.audit_logs(db_session, action="UNAUTHORIZED_ACCESS")
        assert len(entries) == 1
        entry = entries[0]
        assert entry.payload == {
            "kind": "access_denied",
            "reason": "permission",
            "required": "permissions:read",
        }
        assert entry.user_id == test_user.id
        assert entry.http_path == GUARDED
        # Denials always open a HIGH incident and are pinned
        assert entry.incident_status == "OPEN"
        assert entry.priority == "HIGH"
        assert entry.is_pinned is True

    @pytest.mark.asyncio
    async def test_admin_passes_every_permission_check(self, async_client: AsyncClient, admin_headers):
        response = await async_client.get(GUARDED, headers=admin_headers)

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_admin_only_route(self, async_client: AsyncClient, auth_headers, admin_headers, helpers):
        response = await async_client.get("/api/v1/soc/trusted-users", headers=auth_headers)
        helpers.assert_error(response, 403, "FORBIDDEN")

        response = await async_client.get("/api/v1/soc/trusted-users", headers=admin_headers)
        assert response.status_code == 200
