"""
Audit Recorder Tests

Out-of-band audit writes: column capture, incident classification,
anomaly signals, auto-pinning, broadcasts and failure isolation.
"""

import asyncio
from unittest.mock import MagicMock

import pytest
from httpx import AsyncClient

from bastion.api.audit.context import RequestContext
from bastion.api.audit.events import (
    AuditAction,
    AuditOutcome,
    AuditResource,
    AuthFailurePayload,
    AuthMethod,
)
from bastion.api.audit.recorder import AuditRecorder
from bastion.api.auth.principal import Principal
from bastion.api.services.metrics import RequestMetrics
from bastion.api.soc.anomaly import AnomalyDetector
from bastion.api.soc.trusted import TrustedUserRegistry


ATTACKER_IP = "198.51.100.9"


def request_context(ip: str = ATTACKER_IP, principal=None, path: str = "/api/v1/auth/login") -> RequestContext:
    return RequestContext(
        correlation_id="corr-test-1",
        ip_address=ip,
        user_agent="pytest",
        http_method="POST",
        http_path=path,
        principal=principal,
    )


def make_recorder(session_maker, **kwargs) -> AuditRecorder:
    kwargs.setdefault("detector", AnomalyDetector())
    kwargs.setdefault("metrics", RequestMetrics())
    return AuditRecorder(session_factory=session_maker, **kwargs)


# ==================== Captured columns ====================


@pytest.mark.asyncio
async def test_write_captures_request_metadata(session_maker, db_session, test_user, helpers):
    recorder = make_recorder(session_maker)
    principal = Principal(user=test_user, auth_method=AuthMethod.JWT)

    entry_id = await recorder.write(
        request_context(principal=principal, path="/api/v1/permissions/"),
        AuditAction.READ_LIST,
        AuditResource.PERMISSION,
        AuditOutcome.success(count=3),
    )

    [entry] = await helpers.audit_logs(db_session, id=entry_id)
    assert entry.action == "READ_LIST"
    assert entry.resource == "PERMISSION"
    assert entry.status == "SUCCESS"
    assert entry.correlation_id == "corr-test-1"
    assert entry.ip_address == ATTACKER_IP
    assert entry.user_agent == "pytest"
    assert entry.http_method == "POST"
    assert entry.http_path == "/api/v1/permissions/"
    assert entry.user_id == test_user.id
    assert entry.user_email == test_user.email
    assert entry.auth_method == "JWT"
    assert entry.details == {"count": 3}
    assert entry.incident_status is None
    assert entry.is_pinned is False


@pytest.mark.asyncio
async def test_write_without_context_uses_background_context(session_maker, db_session, helpers):
    recorder = make_recorder(session_maker)

    entry_id = await recorder.write(None, AuditAction.DELETE, AuditResource.SYSTEM)

    [entry] = await helpers.audit_logs(db_session, id=entry_id)
    assert entry.correlation_id
    assert entry.ip_address is None
    assert entry.auth_method == "UNAUTHENTICATED"


@pytest.mark.asyncio
async def test_error_message_truncated(session_maker, db_session, helpers):
    recorder = make_recorder(session_maker, max_error_len=10)

    entry_id = await recorder.write(
        request_context(),
        AuditAction.UPDATE,
        AuditResource.SYSTEM,
        AuditOutcome.error("x" * 50),
    )

    [entry] = await helpers.audit_logs(db_session, id=entry_id)
    assert entry.error_message == "x" * 10
    assert entry.status == "ERROR"


@pytest.mark.asyncio
async def test_correlation_id_flows_from_header_to_entry(
    async_client: AsyncClient, app, db_session, helpers
):
    response = await async_client.get(
        "/api/v1/permissions/my-permissions",
        headers={"X-Correlation-ID": "trace-42"},
    )

    assert response.status_code == 401
    assert response.headers["X-Correlation-ID"] == "trace-42"
    assert response.json()["correlation_id"] == "trace-42"

    await helpers.settle(app)
    [entry] = await helpers.audit_logs(db_session, action="AUTH_FAILED")
    assert entry.correlation_id == "trace-42"


@pytest.mark.asyncio
async def test_unsafe_correlation_id_replaced(async_client: AsyncClient):
    response = await async_client.get("/api/health", headers={"X-Correlation-ID": "bad id!"})

    echoed = response.headers["X-Correlation-ID"]
    assert echoed != "bad id!"
    assert response.headers["X-Request-ID"] == echoed
    assert response.json()["audit"] == {"enabled": True, "pending": 0}


@pytest.mark.asyncio
async def test_concurrent_requests_keep_their_own_correlation_ids(
    async_client: AsyncClient, app, db_session, helpers
):
    first, second = await asyncio.gather(
        async_client.get("/api/v1/permissions/my-permissions", headers={"X-Correlation-ID": "trace-a"}),
        async_client.get("/api/v1/permissions/my-permissions", headers={"X-Correlation-ID": "trace-b"}),
    )

    assert first.headers["X-Correlation-ID"] == "trace-a"
    assert second.headers["X-Correlation-ID"] == "trace-b"
    assert first.json()["correlation_id"] == "trace-a"
    assert second.json()["correlation_id"] == "trace-b"

    await helpers.settle(app)
    entries = await helpers.audit_logs(db_session, action="AUTH_FAILED")
    assert sorted(e.correlation_id for e in entries) == ["trace-a", "trace-b"]


@pytest.mark.asyncio
async def test_cors_preflight_carries_correlation_id(async_client: AsyncClient):
    response = await async_client.options(
        "/api/v1/permissions/my-permissions",
        headers={
            "Origin": "http://localhost:3000",
            "Access-Control-Request-Method": "GET",
            "X-Correlation-ID": "preflight-1",
        },
    )

    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
    assert response.headers["X-Correlation-ID"] == "preflight-1"


# ==================== Incidents ====================


@pytest.mark.asyncio
async def test_auth_failure_opens_incident(session_maker, db_session, helpers):
    recorder = make_recorder(session_maker)

    entry_id = await recorder.write(
        request_context(),
        AuditAction.AUTH_FAILED,
        AuditResource.AUTH,
        AuditOutcome.failure(
            "Invalid or expired token",
            payload=AuthFailurePayload(attempted_method=AuthMethod.JWT, reason="invalid_token"),
        ),
    )

    [entry] = await helpers.audit_logs(db_session, id=entry_id)
    assert entry.incident_status == "OPEN"
    assert entry.incident_source == "AUTH_FAILURE"
    assert entry.priority == "MEDIUM"


@pytest.mark.asyncio
async def test_failure_on_sensitive_resource_is_medium(session_maker, db_session, helpers):
    recorder = make_recorder(session_maker)

    sensitive = await recorder.write(
        request_context(), AuditAction.GRANT, AuditResource.PERMISSION,
        AuditOutcome.failure("Permission not found"),
    )
    ordinary = await recorder.write(
        request_context(), AuditAction.UPDATE, AuditResource.SYSTEM,
        AuditOutcome.failure("Nothing to update"),
    )

    [sensitive_entry] = await helpers.audit_logs(db_session, id=sensitive)
    [ordinary_entry] = await helpers.audit_logs(db_session, id=ordinary)
    assert sensitive_entry.priority == "MEDIUM"
    assert ordinary_entry.priority == "LOW"
    assert ordinary_entry.incident_source == "OPERATION_FAILURE"


@pytest.mark.asyncio
async def test_severity_hint_raises_priority(session_maker, db_session, helpers):
    recorder = make_recorder(session_maker)

    entry_id = await recorder.write(
        request_context(), AuditAction.UPDATE, AuditResource.SYSTEM,
        AuditOutcome.failure("Tampering detected", severity="CRITICAL"),
    )

    [entry] = await helpers.audit_logs(db_session, id=entry_id)
    assert entry.priority == "CRITICAL"


@pytest.mark.asyncio
async def test_brute_force_escalates_to_critical(session_maker, db_session, helpers):
    recorder = make_recorder(session_maker)
    context = request_context()
    outcome = AuditOutcome.failure(
        "Authentication required",
        payload=AuthFailurePayload(attempted_method=AuthMethod.UNAUTHENTICATED, reason="missing_credentials"),
    )

    ids = [
        await recorder.write(context, AuditAction.AUTH_FAILED, AuditResource.AUTH, outcome)
        for _ in range(5)
    ]

    entries = await helpers.audit_logs(db_session, action="AUTH_FAILED")
    assert [e.id for e in entries] == ids
    assert [e.priority for e in entries[:4]] == ["MEDIUM"] * 4

    fifth = entries[4]
    assert fifth.priority == "CRITICAL"
    assert fifth.details["anomaly"]["rule"] == "brute_force"
    assert fifth.is_pinned is True
    assert fifth.pinned_at is not None


@pytest.mark.asyncio
async def test_distinct_ip_signal_alone_is_not_an_incident(session_maker, db_session, test_user, helpers):
    recorder = make_recorder(session_maker)
    principal = Principal(user=test_user, auth_method=AuthMethod.JWT)

    for octet in range(1, 5):
        last = await recorder.write(
            request_context(ip=f"192.0.2.{octet}", principal=principal, path="/api/v1/permissions/pages"),
            AuditAction.READ_LIST,
            AuditResource.PERMISSION,
        )

    [entry] = await helpers.audit_logs(db_session, id=last)
    assert entry.details["anomaly"]["rule"] == "distinct_ips"
    assert entry.details["anomaly"]["severity"] == "MEDIUM"
    assert entry.incident_status is None


@pytest.mark.asyncio
async def test_trusted_user_raises_no_anomaly(session_maker, db_session, test_user, helpers):
    await TrustedUserRegistry(db_session).add(user_id=test_user.id, reason="travelling analyst")
    await db_session.commit()
    recorder = make_recorder(session_maker)
    principal = Principal(user=test_user, auth_method=AuthMethod.JWT)

    for octet in range(1, 5):
        last = await recorder.write(
            request_context(ip=f"192.0.2.{octet}", principal=principal, path="/api/v1/permissions/pages"),
            AuditAction.READ_LIST,
            AuditResource.PERMISSION,
        )

    [entry] = await helpers.audit_logs(db_session, id=last)
    assert "anomaly" not in (entry.details or {})
    assert entry.incident_status is None


@pytest.mark.asyncio
async def test_soc_operations_never_trigger_anomalies(session_maker, db_session, helpers):
    detector = AnomalyDetector()
    recorder = make_recorder(session_maker, detector=detector)
    context = request_context(path="/api/v1/soc/incidents/1")

    for _ in range(6):
        last = await recorder.write(
            context, AuditAction.UPDATE, AuditResource.INCIDENT,
            AuditOutcome.failure("Incident is RESOLVED and can no longer change status"),
        )

    [entry] = await helpers.audit_logs(db_session, id=last)
    assert entry.details is None


# ==================== Auto-pin ====================


@pytest.mark.asyncio
async def test_api_key_creation_is_pinned(session_maker, db_session, admin_user, helpers):
    recorder = make_recorder(session_maker)
    principal = Principal(user=admin_user, auth_method=AuthMethod.JWT)

    entry_id = await recorder.write(
        request_context(principal=principal), AuditAction.CREATE, AuditResource.API_KEY,
        AuditOutcome.success(resource_id=7),
    )

    [entry] = await helpers.audit_logs(db_session, id=entry_id)
    assert entry.is_pinned is True
    assert entry.resource_id == "7"


@pytest.mark.asyncio
async def test_permission_change_over_api_key_is_pinned(session_maker, db_session, admin_user, helpers):
    recorder = make_recorder(session_maker)
    via_key = Principal(user=admin_user, auth_method=AuthMethod.API_KEY)
    via_jwt = Principal(user=admin_user, auth_method=AuthMethod.JWT)

    pinned = await recorder.write(
        request_context(principal=via_key), AuditAction.GRANT, AuditResource.USER,
    )
    unpinned = await recorder.write(
        request_context(principal=via_jwt), AuditAction.GRANT, AuditResource.USER,
    )

    [pinned_entry] = await helpers.audit_logs(db_session, id=pinned)
    [unpinned_entry] = await helpers.audit_logs(db_session, id=unpinned)
    assert pinned_entry.is_pinned is True
    assert unpinned_entry.is_pinned is False


# ==================== Broadcasts ====================


@pytest.mark.asyncio
async def test_broadcasts_entry_and_incident(session_maker):
    broadcaster = MagicMock()
    recorder = make_recorder(session_maker, broadcaster=broadcaster)

    entry_id = await recorder.write(
        request_context(), AuditAction.UNAUTHORIZED_ACCESS, AuditResource.SECURITY,
        AuditOutcome.failure("Access denied", severity="HIGH"),
    )

    serialized, change = broadcaster.audit_log_update.call_args.args
    assert serialized["id"] == entry_id
    assert serialized["incident_status"] == "OPEN"
    assert change == "created"
    broadcaster.security_event.assert_called_once_with(serialized, "HIGH")
    broadcaster.incident_update.assert_called_once_with(serialized, "opened")


@pytest.mark.asyncio
async def test_plain_entry_broadcasts_only_the_entry(session_maker):
    broadcaster = MagicMock()
    recorder = make_recorder(session_maker, broadcaster=broadcaster)

    await recorder.write(request_context(), AuditAction.READ, AuditResource.SYSTEM)

    broadcaster.audit_log_update.assert_called_once()
    broadcaster.security_event.assert_not_called()
    broadcaster.incident_update.assert_not_called()


# ==================== Failure isolation ====================


@pytest.mark.asyncio
async def test_write_failure_is_swallowed_and_counted():
    def broken_session():
        raise RuntimeError("database unavailable")

    metrics = RequestMetrics()
    recorder = AuditRecorder(session_factory=broken_session, metrics=metrics)

    assert await recorder.write(request_context(), AuditAction.READ, AuditResource.SYSTEM) is None

    recorder.record(request_context(), AuditAction.READ, AuditResource.SYSTEM)
    await recorder.drain()

    assert metrics.audit_failures == 2
    assert metrics.snapshot()["audit"] == {"written": 0, "failed": 2}


@pytest.mark.asyncio
async def test_record_is_fire_and_forget(session_maker, db_session, helpers):
    metrics = RequestMetrics()
    recorder = make_recorder(session_maker, metrics=metrics)

    recorder.record(request_context(), AuditAction.READ, AuditResource.SYSTEM)
    assert recorder.pending == 1

    await recorder.drain()

    assert recorder.pending == 0
    assert metrics.snapshot()["audit"]["written"] == 1
    assert len(await helpers.audit_logs(db_session, action="READ")) == 1


@pytest.mark.asyncio
async def test_disabled_recorder_writes_nothing(session_maker, db_session, helpers):
    recorder = make_recorder(session_maker, enabled=False)

    assert await recorder.write(request_context(), AuditAction.READ, AuditResource.SYSTEM) is None
    recorder.record(request_context(), AuditAction.READ, AuditResource.SYSTEM)

    assert recorder.pending == 0
    assert await helpers.audit_logs(db_session) == []
