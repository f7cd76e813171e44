"""
Test Configuration and Fixtures

Shared fixtures for BASTION API tests.
Provides an isolated database, an app wired to it, users, roles and tokens.
"""

import uuid
from typing import AsyncGenerator, List, Optional

import bcrypt
import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import AsyncClient, ASGITransport
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bastion.api.audit.recorder import AuditRecorder
from bastion.api.auth.jwt import create_access_token
from bastion.api.db.models import AuditLog, Base, Permission, Role, User
from bastion.api.db.session import build_engine, build_session_maker, get_db
from bastion.api.main import create_app
from bastion.api.soc.anomaly import AnomalyDetector


TEST_PASSWORD = "TestPassword123!"


# ==================== Database Fixtures ====================


@pytest_asyncio.fixture(scope="function")
async def async_engine(tmp_path):
    """
    Create an async SQLite engine for testing.

    File backed so request sessions, the audit recorder's sessions and
    the test session each get their own connection.
    """
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'bastion.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture(scope="function")
def session_maker(async_engine) -> async_sessionmaker:
    return build_session_maker(async_engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests."""
    async with session_maker() as session:
        yield session
        await session.rollback()


# ==================== Application Fixtures ====================


@pytest.fixture(scope="function")
def app(session_maker) -> FastAPI:
    """
    Create FastAPI app with test database.

    Each request gets its own session, so fixture data must be committed
    before the request is made.
    """
    test_app = create_app()

    async def override_get_db():
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    test_app.dependency_overrides[get_db] = override_get_db

    test_app.state.audit_recorder = AuditRecorder(
        session_factory=session_maker,
        broadcaster=test_app.state.broadcaster,
        detector=AnomalyDetector(),
        metrics=test_app.state.metrics,
    )
    return test_app


@pytest.fixture(scope="function")
def audit_recorder(app) -> AuditRecorder:
    return app.state.audit_recorder


@pytest_asyncio.fixture(scope="function")
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    await app.state.audit_recorder.drain()
    await app.state.broadcaster.drain()


# ==================== User Fixtures ====================


async def make_user(
    session: AsyncSession,
    email: str,
    is_admin: bool = False,
    role: Optional[Role] = None,
    is_active: bool = True,
) -> User:
    user = User(
        id=uuid.uuid4(),
        email=email,
        password_hash=bcrypt.hashpw(TEST_PASSWORD.encode(), bcrypt.gensalt(rounds=4)).decode(),
        name=email.split("@")[0].title(),
        is_active=is_active,
        is_admin=is_admin,
        role_id=role.id if role else None,
    )
    session.add(user)
    await session.commit()
    await session.refresh(user)
    return user


@pytest_asyncio.fixture(scope="function")
async def test_user(db_session) -> User:
    """Create a regular user without grants."""
    return await make_user(db_session, "test@bastion.dev")


@pytest_asyncio.fixture(scope="function")
async def other_user(db_session) -> User:
    """Create a second regular user, the usual grant target."""
    return await make_user(db_session, "other@bastion.dev")


@pytest_asyncio.fixture(scope="function")
async def admin_user(db_session) -> User:
    """Create an admin user."""
    return await make_user(db_session, "admin@bastion.dev", is_admin=True)


@pytest_asyncio.fixture(scope="function")
async def analyst_role(db_session) -> Role:
    role = Role(name="analyst", description="Security analysts")
    db_session.add(role)
    await db_session.commit()
    await db_session.refresh(role)
    return role


@pytest_asyncio.fixture(scope="function")
async def role_user(db_session, analyst_role) -> User:
    """Create a user in the analyst role."""
    return await make_user(db_session, "analyst@bastion.dev", role=analyst_role)


@pytest.fixture(scope="function")
def user_token(test_user) -> str:
    """Create JWT token for test user."""
    return create_access_token(
        user_id=test_user.id,
        email=test_user.email,
        is_admin=test_user.is_admin,
    )


@pytest.fixture(scope="function")
def admin_token(admin_user) -> str:
    """Create JWT token for admin user."""
    return create_access_token(
        user_id=admin_user.id,
        email=admin_user.email,
        is_admin=admin_user.is_admin,
    )


@pytest.fixture(scope="function")
def auth_headers(user_token) -> dict:
    """Authorization headers for regular user."""
    return {"Authorization": f"Bearer {user_token}"}


@pytest.fixture(scope="function")
def admin_headers(admin_token) -> dict:
    """Authorization headers for admin user."""
    return {"Authorization": f"Bearer {admin_token}"}


def headers_for(user: User, ip: Optional[str] = None) -> dict:
    token = create_access_token(user_id=user.id, email=user.email, is_admin=user.is_admin)
    headers = {"Authorization": f"Bearer {token}"}
    if ip:
        headers["X-Forwarded-For"] = ip
    return headers


# ==================== Permission Fixtures ====================


async def make_permission(session: AsyncSession, resource: str, action: str) -> Permission:
    permission = Permission(name=f"{resource}:{action}", resource=resource, action=action)
    session.add(permission)
    await session.commit()
    await session.refresh(permission)
    return permission


@pytest_asyncio.fixture(scope="function")
async def reports_read(db_session) -> Permission:
    return await make_permission(db_session, "reports", "read")


# ==================== Helpers ====================


class TestHelpers:
    """Helper methods for tests."""

    @staticmethod
    async def settle(app: FastAPI) -> None:
        """Wait for scheduled audit writes and broadcasts."""
        await app.state.audit_recorder.drain()
        await app.state.broadcaster.drain()

    @staticmethod
    async def audit_logs(session: AsyncSession, **filters) -> List[AuditLog]:
        """Audit entries matching column filters, oldest first."""
        query = select(AuditLog).execution_options(populate_existing=True)
        for column, value in filters.items():
            query = query.where(getattr(AuditLog, column) == value)
        result = await session.execute(query.order_by(AuditLog.id))
        return list(result.scalars().all())

    @staticmethod
    def assert_error(response, status_code: int, kind: str) -> None:
        assert response.status_code == status_code, response.text
        body = response.json()
        assert body["error"] == kind
        assert body["correlation_id"]


@pytest.fixture(scope="function")
def helpers() -> TestHelpers:
    """Provide test helpers."""
    return TestHelpers()
