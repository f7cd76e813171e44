"""
Permission Route Tests

/api/v1/permissions end to end: guards, grant semantics and auditing.
"""

import pytest
from httpx import AsyncClient

from bastion.api.access.store import PermissionStore, Subject
from bastion.api.tests.conftest import headers_for, make_permission


BASE = "/api/v1/permissions"


# ==================== Catalogue ====================


@pytest.mark.asyncio
async def test_list_permissions_requires_permission(
    async_client: AsyncClient, auth_headers: dict, helpers
):
    response = await async_client.get(f"{BASE}/", headers=auth_headers)

    helpers.assert_error(response, 403, "FORBIDDEN")
    assert response.json()["message"] == "Access denied"


@pytest.mark.asyncio
async def test_list_permissions_without_credentials(async_client: AsyncClient, helpers):
    response = await async_client.get(f"{BASE}/")

    helpers.assert_error(response, 401, "UNAUTHORIZED")
    assert response.headers["WWW-Authenticate"] == "Bearer"


@pytest.mark.asyncio
async def test_admin_lists_and_filters_permissions(
    async_client: AsyncClient, admin_headers: dict, db_session
):
    await make_permission(db_session, "reports", "read")
    await make_permission(db_session, "exports", "run")

    response = await async_client.get(f"{BASE}/", headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["total"] == 2

    response = await async_client.get(f"{BASE}/?resource=reports", headers=admin_headers)
    assert [p["name"] for p in response.json()["permissions"]] == ["reports:read"]


@pytest.mark.asyncio
async def test_create_permission_and_duplicate(
    async_client: AsyncClient, admin_headers: dict, app, db_session, helpers
):
    body = {"resource": "reports", "action": "export", "description": "Export reports"}

    response = await async_client.post(f"{BASE}/", json=body, headers=admin_headers)
    assert response.status_code == 201
    assert response.json()["name"] == "reports:export"

    response = await async_client.post(f"{BASE}/", json=body, headers=admin_headers)
    helpers.assert_error(response, 409, "CONFLICT")

    await helpers.settle(app)
    entries = await helpers.audit_logs(db_session, action="CREATE", resource="PERMISSION")
    assert sorted(e.status for e in entries) == ["FAILURE", "SUCCESS"]


@pytest.mark.asyncio
async def test_create_permission_validation_error(
    async_client: AsyncClient, admin_headers: dict, helpers
):
    response = await async_client.post(f"{BASE}/", json={"resource": "reports"}, headers=admin_headers)

    helpers.assert_error(response, 400, "VALIDATION")


@pytest.mark.asyncio
async def test_page_registry_for_any_authenticated_user(async_client: AsyncClient, auth_headers: dict):
    response = await async_client.get(f"{BASE}/pages", headers=auth_headers)

    assert response.status_code == 200
    data = response.json()
    assert "students" in {p["page"] for p in data["pages"]}
    assert "security" in data["categories"]


# ==================== Direct Grants ====================


@pytest.mark.asyncio
async def test_grant_then_regrant_conflicts(
    async_client: AsyncClient, admin_headers: dict, other_user, reports_read, app, db_session, helpers
):
    url = f"{BASE}/users/{other_user.id}/grant"

    response = await async_client.post(url, json={"permission_id": reports_read.id}, headers=admin_headers)
    assert response.status_code == 200
    data = response.json()
    assert data["outcome"] == "CREATED"
    assert data["permission"]["name"] == "reports:read"
    assert data["is_active"] is True

    response = await async_client.post(url, json={"permission_id": reports_read.id}, headers=admin_headers)
    helpers.assert_error(response, 409, "CONFLICT")

    await helpers.settle(app)
    [granted] = await helpers.audit_logs(db_session, action="GRANT", resource="USER", status="SUCCESS")
    [rejected] = await helpers.audit_logs(db_session, action="GRANT", resource="USER", status="FAILURE")
    assert granted.payload["permissions"] == ["reports:read"]
    assert granted.payload["subject_id"] == str(other_user.id)
    assert rejected.payload["outcome"] == "CONFLICT"


@pytest.mark.asyncio
async def test_revoke_then_regrant_reactivates(
    async_client: AsyncClient, admin_headers: dict, other_user, reports_read
):
    body = {"permission_id": reports_read.id}

    await async_client.post(f"{BASE}/users/{other_user.id}/grant", json=body, headers=admin_headers)

    response = await async_client.post(f"{BASE}/users/{other_user.id}/revoke", json=body, headers=admin_headers)
    assert response.json()["outcome"] == "REVOKED"
    assert response.json()["is_active"] is False

    response = await async_client.post(f"{BASE}/users/{other_user.id}/revoke", json=body, headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["outcome"] == "UNCHANGED"

    response = await async_client.post(f"{BASE}/users/{other_user.id}/grant", json=body, headers=admin_headers)
    assert response.json()["outcome"] == "REACTIVATED"


@pytest.mark.asyncio
async def test_grant_unknown_permission_not_found(
    async_client: AsyncClient, admin_headers: dict, other_user, helpers
):
    response = await async_client.post(
        f"{BASE}/users/{other_user.id}/grant", json={"permission_id": 999}, headers=admin_headers
    )

    helpers.assert_error(response, 404, "NOT_FOUND")


@pytest.mark.asyncio
async def test_plain_grant_cannot_bypass_page_checks(
    async_client: AsyncClient, admin_headers: dict, other_user, db_session, helpers
):
    page_edit = await PermissionStore(db_session).get_or_create_permission("page", "soc:edit")
    await db_session.commit()

    response = await async_client.post(
        f"{BASE}/users/{other_user.id}/grant", json={"permission_id": page_edit.id}, headers=admin_headers
    )

    helpers.assert_error(response, 400, "VALIDATION")
    assert "page permission" in response.json()["message"]


@pytest.mark.asyncio
async def test_cannot_modify_own_permissions(
    async_client: AsyncClient, admin_user, admin_headers: dict, reports_read, app, db_session, helpers
):
    response = await async_client.post(
        f"{BASE}/users/{admin_user.id}/grant",
        json={"permission_id": reports_read.id},
        headers=admin_headers,
    )

    helpers.assert_error(response, 403, "FORBIDDEN")
    assert response.json()["message"] == "You cannot modify your own permissions"

    await helpers.settle(app)
    entries = await helpers.audit_logs(db_session, action="UNAUTHORIZED_ACCESS")
    assert len(entries) == 1
    assert entries[0].payload["reason"] == "self_modification"
    assert entries[0].resource == "USER"


@pytest.mark.asyncio
async def test_cannot_modify_own_role(
    async_client: AsyncClient, db_session, analyst_role, role_user, reports_read, helpers
):
    # The analyst may manage permissions, but not those of their own role
    store = PermissionStore(db_session)
    update = await make_permission(db_session, "permissions", "update")
    await store.grant(Subject.user(role_user.id), update.id)
    await db_session.commit()

    response = await async_client.post(
        f"{BASE}/roles/{analyst_role.id}/grant",
        json={"permission_id": reports_read.id},
        headers=headers_for(role_user),
    )

    helpers.assert_error(response, 403, "FORBIDDEN")


@pytest.mark.asyncio
async def test_delegated_permission_manager(
    async_client: AsyncClient, db_session, test_user, other_user, reports_read
):
    """A non-admin holding permissions:update can grant to others."""
    update = await make_permission(db_session, "permissions", "update")
    await PermissionStore(db_session).grant(Subject.user(test_user.id), update.id)
    await db_session.commit()

    response = await async_client.post(
        f"{BASE}/users/{other_user.id}/grant",
        json={"permission_id": reports_read.id},
        headers=headers_for(test_user),
    )

    assert response.status_code == 200
    assert response.json()["granted_by"] == str(test_user.id)


# ==================== Page Grants ====================


@pytest.mark.asyncio
async def test_grant_page_and_read_matrix(
    async_client: AsyncClient, admin_headers: dict, other_user
):
    response = await async_client.post(
        f"{BASE}/users/{other_user.id}/grant-page",
        json={"page": "students", "action": "edit"},
        headers=admin_headers,
    )
    assert response.status_code == 200
    data = response.json()
    assert data["page_permission"] == "page:students:edit"
    assert data["outcomes"]["page:students:view"] == "CREATED"

    response = await async_client.get(
        f"{BASE}/users/{other_user.id}/page-permissions", headers=admin_headers
    )
    pages = response.json()["pages"]
    assert pages["students"]["view"] is True
    assert pages["students"]["edit"] is True
    assert pages["soc"]["view"] is False


@pytest.mark.asyncio
async def test_grant_unknown_page_not_found(
    async_client: AsyncClient, admin_headers: dict, other_user, helpers
):
    response = await async_client.post(
        f"{BASE}/users/{other_user.id}/grant-page",
        json={"page": "nowhere"},
        headers=admin_headers,
    )

    helpers.assert_error(response, 404, "NOT_FOUND")


@pytest.mark.asyncio
async def test_grant_edit_on_view_only_page(
    async_client: AsyncClient, admin_headers: dict, other_user, helpers
):
    response = await async_client.post(
        f"{BASE}/users/{other_user.id}/grant-page",
        json={"page": "dashboard", "action": "edit"},
        headers=admin_headers,
    )

    helpers.assert_error(response, 400, "VALIDATION")


@pytest.mark.asyncio
async def test_revoke_page_without_grant(
    async_client: AsyncClient, admin_headers: dict, other_user, helpers
):
    response = await async_client.post(
        f"{BASE}/users/{other_user.id}/revoke-page",
        json={"page": "students", "action": "view"},
        headers=admin_headers,
    )

    helpers.assert_error(response, 404, "NOT_FOUND")


@pytest.mark.asyncio
async def test_bulk_grant_is_all_or_nothing(
    async_client: AsyncClient, admin_headers: dict, other_user, db_session, helpers
):
    response = await async_client.post(
        f"{BASE}/users/{other_user.id}/bulk-grant-page",
        json={"permissions": [{"page": "dashboard"}, {"page": "nowhere"}]},
        headers=admin_headers,
    )
    helpers.assert_error(response, 404, "NOT_FOUND")

    response = await async_client.get(f"{BASE}/users/{other_user.id}", headers=admin_headers)
    assert response.json()["permissions"] == []

    response = await async_client.post(
        f"{BASE}/users/{other_user.id}/bulk-grant-page",
        json={"permissions": [{"page": "dashboard"}, {"page": "student-exits", "action": "edit"}]},
        headers=admin_headers,
    )
    assert response.status_code == 200
    assert [r["page_permission"] for r in response.json()["results"]] == [
        "page:dashboard:view",
        "page:student-exits:edit",
    ]


@pytest.mark.asyncio
async def test_custom_mode_grant_and_revoke(
    async_client: AsyncClient, admin_headers: dict, other_user, helpers
):
    body = {"page": "students", "mode_id": "counselor"}

    response = await async_client.post(
        f"{BASE}/users/{other_user.id}/grant-custom-mode", json=body, headers=admin_headers
    )
    assert response.status_code == 200
    assert response.json()["page_permission"] == "page:students:mode:counselor"

    response = await async_client.post(
        f"{BASE}/users/{other_user.id}/revoke-custom-mode", json=body, headers=admin_headers
    )
    assert response.status_code == 200
    assert response.json()["outcomes"]["page:students:mode:counselor"] == "REVOKED"

    response = await async_client.post(
        f"{BASE}/users/{other_user.id}/revoke-custom-mode", json=body, headers=admin_headers
    )
    helpers.assert_error(response, 404, "NOT_FOUND")


# ==================== Roles ====================


@pytest.mark.asyncio
async def test_role_grant_reaches_members(
    async_client: AsyncClient, admin_headers: dict, analyst_role, role_user, db_session
):
    reports = await make_permission(db_session, "permissions", "read")

    response = await async_client.post(
        f"{BASE}/roles/{analyst_role.id}/grant",
        json={"permission_id": reports.id},
        headers=admin_headers,
    )
    assert response.status_code == 200
    assert response.json()["subject_type"] == "role"

    # The member can now use the guarded listing
    response = await async_client.get(f"{BASE}/", headers=headers_for(role_user))
    assert response.status_code == 200

    response = await async_client.post(
        f"{BASE}/roles/{analyst_role.id}/revoke",
        json={"permission_id": reports.id},
        headers=admin_headers,
    )
    assert response.json()["outcome"] == "REVOKED"

    response = await async_client.get(f"{BASE}/", headers=headers_for(role_user))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_role_page_permissions(
    async_client: AsyncClient, admin_headers: dict, analyst_role
):
    await async_client.post(
        f"{BASE}/roles/{analyst_role.id}/grant-page",
        json={"page": "dashboard"},
        headers=admin_headers,
    )

    response = await async_client.get(
        f"{BASE}/roles/{analyst_role.id}/page-permissions", headers=admin_headers
    )

    assert response.status_code == 200
    assert response.json()["subject_type"] == "role"
    assert response.json()["pages"]["dashboard"]["view"] is True


@pytest.mark.asyncio
async def test_unknown_role_not_found(async_client: AsyncClient, admin_headers: dict, helpers):
    response = await async_client.get(f"{BASE}/roles/9999/page-permissions", headers=admin_headers)

    helpers.assert_error(response, 404, "NOT_FOUND")


# ==================== Own permissions ====================


@pytest.mark.asyncio
async def test_my_permissions(
    async_client: AsyncClient, db_session, test_user, auth_headers: dict, reports_read
):
    await PermissionStore(db_session).grant(Subject.user(test_user.id), reports_read.id)
    await db_session.commit()

    response = await async_client.get(f"{BASE}/my-permissions", headers=auth_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["is_admin"] is False
    assert [p["name"] for p in data["permissions"]] == ["reports:read"]
    assert data["permissions"][0]["sources"] == ["user"]


@pytest.mark.asyncio
async def test_my_page_permissions_for_admin(async_client: AsyncClient, admin_headers: dict):
    response = await async_client.get(f"{BASE}/my-page-permissions", headers=admin_headers)

    pages = response.json()["pages"]
    assert all(flags["view"] for flags in pages.values())


# ==================== Presets ====================


@pytest.mark.asyncio
async def test_list_presets(async_client: AsyncClient, auth_headers: dict):
    response = await async_client.get(f"{BASE}/presets", headers=auth_headers)

    assert response.status_code == 200
    by_id = {p["preset_id"]: p for p in response.json()["presets"]}
    assert set(by_id) == {"teacher", "counselor", "administrator", "commander", "viewer", "api-developer"}
    assert by_id["teacher"]["pages"] == [
        {"page": "dashboard", "action": "view"},
        {"page": "students", "action": "edit"},
    ]


@pytest.mark.asyncio
async def test_apply_preset_to_user(
    async_client: AsyncClient, admin_headers: dict, other_user, app, db_session, helpers
):
    response = await async_client.post(
        f"{BASE}/users/{other_user.id}/apply-preset/teacher", headers=admin_headers
    )

    assert response.status_code == 200
    data = response.json()
    assert data["preset_id"] == "teacher"
    assert [r["page_permission"] for r in data["results"]] == ["page:dashboard:view", "page:students:edit"]

    response = await async_client.get(f"{BASE}/users/{other_user.id}/page-permissions", headers=admin_headers)
    pages = response.json()["pages"]
    assert pages["students"]["edit"] is True
    assert pages["soc"]["view"] is False

    await helpers.settle(app)
    [entry] = await helpers.audit_logs(db_session, action="GRANT", resource="USER", status="SUCCESS")
    assert entry.payload["preset"] == "teacher"
    assert entry.payload["outcome"] == "PRESET"
    assert "page:students:edit" in entry.payload["permissions"]


@pytest.mark.asyncio
async def test_admin_only_preset_rejected_for_regular_user(
    async_client: AsyncClient, admin_headers: dict, other_user, helpers
):
    response = await async_client.post(
        f"{BASE}/users/{other_user.id}/apply-preset/administrator", headers=admin_headers
    )

    helpers.assert_error(response, 400, "VALIDATION")

    # Pages granted before the admin-only page are rolled back too
    response = await async_client.get(f"{BASE}/users/{other_user.id}", headers=admin_headers)
    assert response.json()["permissions"] == []


@pytest.mark.asyncio
async def test_apply_preset_to_role(async_client: AsyncClient, admin_headers: dict, analyst_role):
    response = await async_client.post(
        f"{BASE}/roles/{analyst_role.id}/apply-preset/viewer", headers=admin_headers
    )

    assert response.status_code == 200
    response = await async_client.get(f"{BASE}/roles/{analyst_role.id}/page-permissions", headers=admin_headers)
    pages = response.json()["pages"]
    assert all(pages[page]["view"] for page in ("dashboard", "students", "soc"))
    assert pages["students"]["edit"] is False


@pytest.mark.asyncio
async def test_apply_unknown_preset(async_client: AsyncClient, admin_headers: dict, other_user, helpers):
    response = await async_client.post(
        f"{BASE}/users/{other_user.id}/apply-preset/janitor", headers=admin_headers
    )

    helpers.assert_error(response, 404, "NOT_FOUND")


@pytest.mark.asyncio
async def test_apply_preset_to_self_denied(
    async_client: AsyncClient, admin_user, admin_headers: dict, helpers
):
    response = await async_client.post(
        f"{BASE}/users/{admin_user.id}/apply-preset/viewer", headers=admin_headers
    )

    helpers.assert_error(response, 403, "FORBIDDEN")
