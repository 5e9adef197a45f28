from app.features.users.auth import create_access_token
from app.features.users.dependencies import get_current_user


async def test_health(client):
    r = await client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "healthy"}


async def test_roles_permissions_editor_payload(client):
    r = await client.get("/permissions/roles-permissions")
    assert r.status_code == 200
    body = r.json()

    assert body["matrix"]["STAFF"] == ["VIEW_ADMIN_DASHBOARD"]
    assert body["matrix"]["SUPER_ADMIN"] == []
    roles = {role["code"]: role for role in body["roles"]}
    assert roles["SUPER_ADMIN"]["is_super"] is True
    assert roles["STAFF"]["is_super"] is False
    assert roles["STAFF"]["user_count"] == 1
    assert len(body["permissions"]) == 6


async def test_set_role_permissions_replaces_row_and_audits(client, policy):
    r = await client.put(
        "/permissions/roles/STAFF/permissions",
        json={"permissionIds": ["VIEW_REPORTS", "EXPORT_REPORTS"]},
    )
    assert r.status_code == 200
    assert r.json()["permission_codes"] == ["EXPORT_REPORTS", "VIEW_REPORTS"]
    assert r.json()["matrix_version"] == 2

    r = await client.get("/permissions/audit-logs", params={"resource_type": "role"})
    assert r.status_code == 200
    entry = r.json()["items"][0]
    assert entry["action"] == "set_permissions"
    assert entry["resource_id"] == "STAFF"
    assert entry["user_id"] == policy.admin.id


async def test_super_role_row_is_protected(client):
    r = await client.put("/permissions/roles/SUPER_ADMIN/permissions", json={"permissionIds": ["VIEW_REPORTS"]})
    assert r.status_code == 403
    assert r.json()["error"] == "ProtectedEntity"
    assert r.json()["codes"] == ["SUPER_ADMIN"]


async def test_unknown_permission_code_is_rejected_with_codes(client):
    r = await client.put("/permissions/roles/STAFF/permissions", json={"permissionIds": ["VIEW_REPORTS", "NOPE"]})
    assert r.status_code == 400
    assert r.json() == {"error": "ValidationError", "detail": "Unknown or inactive permission codes", "codes": ["NOPE"]}

    r = await client.get("/permissions/roles/STAFF")
    assert r.json()["permission_codes"] == ["VIEW_ADMIN_DASHBOARD"]


async def test_stale_matrix_version_conflicts(client):
    r = await client.put(
        "/permissions/roles/STAFF/permissions",
        json={"permission_ids": ["VIEW_REPORTS"], "expected_version": 0},
    )
    assert r.status_code == 409
    assert r.json()["error"] == "Conflict"


async def test_policy_editing_requires_manage_permissions(client, policy):
    client.user = policy.staff
    r = await client.put("/permissions/roles/STAFF/permissions", json={"permissionIds": []})
    assert r.status_code == 403
    assert r.json()["detail"] == "Permission denied: MANAGE_PERMISSIONS"


async def test_super_user_passes_every_guard(client, policy):
    client.user = policy.root
    r = await client.put("/features/flags/feature.trader_tools", json={"isEnabled": True})
    assert r.status_code == 200
    r = await client.get(f"/users/{policy.staff.id}")
    assert r.status_code == 200


async def test_user_detail_and_override_replacement(client, policy):
    r = await client.put(
        f"/users/{policy.staff.id}/overrides",
        json={"overrides": [
            {"permissionCode": "MANAGE_USERS", "effect": "ALLOW"},
            {"permissionCode": "VIEW_ADMIN_DASHBOARD", "effect": "DENY"},
            {"permissionCode": "VIEW_REPORTS", "effect": "INHERIT"},
        ]},
    )
    assert r.status_code == 200
    body = r.json()
    assert body["roles"] == ["STAFF"]
    assert body["role_permissions"] == ["VIEW_ADMIN_DASHBOARD"]
    assert body["effective_permissions"] == ["MANAGE_USERS"]
    assert [(o["permission_code"], o["effect"]) for o in body["overrides"]] == [
        ("MANAGE_USERS", "ALLOW"), ("VIEW_ADMIN_DASHBOARD", "DENY"),
    ]

    r = await client.put(f"/users/{policy.staff.id}/overrides", json={"overrides": []})
    assert r.json()["effective_permissions"] == ["VIEW_ADMIN_DASHBOARD"]
    assert r.json()["overrides"] == []


async def test_malformed_override_effect(client, policy):
    r = await client.put(
        f"/users/{policy.staff.id}/overrides",
        json={"overrides": [{"permissionCode": "MANAGE_USERS", "effect": "SOMETIMES"}]},
    )
    assert r.status_code == 400
    assert r.json()["codes"] == ["MANAGE_USERS"]


async def test_assign_roles(client, policy):
    r = await client.put(f"/users/{policy.staff.id}/roles", json={"roleCodes": ["STAFF", "TEMP"]})
    assert r.status_code == 200
    assert r.json()["roles"] == ["STAFF", "TEMP"]

    r = await client.put(f"/users/{policy.staff.id}/roles", json={"roleCodes": ["GHOST"]})
    assert r.status_code == 400


async def test_unknown_user_is_not_found(client):
    r = await client.get("/users/01NOSUCHUSER0000000000000")
    assert r.status_code == 404
    assert r.json()["error"] == "NotFound"


async def test_check_permission_for_caller(client, policy):
    client.user = policy.staff
    r = await client.post("/permissions/check", json={"permissionCode": "VIEW_ADMIN_DASHBOARD"})
    assert r.json() == {"permission_code": "VIEW_ADMIN_DASHBOARD", "has_permission": True, "reason": "granted by role"}

    r = await client.post("/permissions/check", json={"permissionCode": "NOT_A_CODE"})
    assert r.json()["has_permission"] is False
    assert r.json()["reason"] == "unknown permission"


async def test_groups_endpoints(client):
    r = await client.post(
        "/permissions/groups",
        json={"code": "reporting", "name": "Reporting", "permissionCodes": ["VIEW_REPORTS", "EXPORT_REPORTS"]},
    )
    assert r.status_code == 201
    group = r.json()
    assert group["code"] == "REPORTING"
    assert group["permission_codes"] == ["EXPORT_REPORTS", "VIEW_REPORTS"]

    r = await client.post(f"/permissions/groups/{group['id']}/apply/STAFF")
    assert r.status_code == 200
    assert r.json()["permission_codes"] == ["EXPORT_REPORTS", "VIEW_ADMIN_DASHBOARD", "VIEW_REPORTS"]

    r = await client.delete(f"/permissions/groups/{group['id']}")
    assert r.status_code == 204
    r = await client.get("/permissions/groups")
    assert r.json() == []


async def test_permission_catalog_endpoints(client):
    r = await client.post(
        "/permissions/permissions",
        json={"code": "view_orders", "name": "View Orders", "module": "orders", "category": "ORDERS"},
    )
    assert r.status_code == 201
    assert r.json()["code"] == "VIEW_ORDERS"

    r = await client.get("/permissions/permissions", params={"module": "orders"})
    assert [p["code"] for p in r.json()] == ["VIEW_ORDERS"]

    r = await client.get("/permissions/permissions/by-category")
    assert set(r.json()) == {"ADMIN", "REPORTS", "ORDERS"}

    r = await client.post(
        "/permissions/permissions/bulk",
        json={"permissions": [{"code": "VIEW_ORDERS", "name": "View Orders", "module": "orders", "category": "SALES"}]},
    )
    assert r.status_code == 409
    assert r.json()["codes"] == ["VIEW_ORDERS"]

    r = await client.delete("/permissions/permissions/VIEW_ADMIN_DASHBOARD")
    assert r.status_code == 403

    r = await client.put("/permissions/permissions/VIEW_ADMIN_DASHBOARD", json={"is_active": False})
    assert r.status_code == 403
    assert r.json()["error"] == "ProtectedEntity"

    r = await client.put("/permissions/permissions/EXPORT_REPORTS", json={"is_active": False})
    assert r.status_code == 200
    assert r.json()["is_active"] is False


async def test_request_validation_error_shape(client):
    r = await client.put("/permissions/roles/STAFF/permissions", json={})
    assert r.status_code == 400
    assert "permissionIds" in r.json()


async def test_feature_access_endpoints(client):
    await client.put("/features/flags/feature.trader_tools", json={"isEnabled": True, "name": "Trader Tools"})
    await client.put("/features/flags/feature.installments", json={"isEnabled": False})

    r = await client.put(
        "/features/access",
        params={"owner_type": "CUSTOMER", "owner_id": "c1"},
        json={"features": [{"featureCode": "feature.trader_tools", "isEnabled": False}]},
    )
    assert r.status_code == 200
    by_code = {item["feature_code"]: item for item in r.json()}
    assert by_code["feature.trader_tools"] == {
        "feature_code": "feature.trader_tools",
        "name": "Trader Tools",
        "global_enabled": True,
        "is_enabled": False,
        "overridden": True,
    }

    r = await client.get(
        "/features/access/check",
        params={"owner_type": "CUSTOMER", "owner_id": "c2", "feature_code": "feature.trader_tools"},
    )
    assert r.json()["is_enabled"] is True

    r = await client.put(
        "/features/access",
        params={"owner_type": "CUSTOMER", "owner_id": "c1"},
        json={"features": [{"featureCode": "feature.unknown", "isEnabled": True}]},
    )
    assert r.status_code == 400
    assert r.json()["codes"] == ["feature.unknown"]


async def test_feature_administration_requires_manage_settings(client, policy):
    client.user = policy.staff
    r = await client.put("/features/flags/feature.trader_tools", json={"isEnabled": True})
    assert r.status_code == 403


async def test_visibility_endpoints(client):
    r = await client.put(
        "/features/visibility/c1/TRADER_TOOLS",
        json={"visibility": "restricted", "conditionProfilePercent": 60},
    )
    assert r.status_code == 200
    assert r.json()["visibility"] == "RESTRICTED"

    r = await client.get("/features/visibility/c1/TRADER_TOOLS/resolve", params={"profile_percent": 59})
    assert r.json()["visibility"] == "HIDE"
    r = await client.get("/features/visibility/c1/TRADER_TOOLS/resolve", params={"profile_percent": 60})
    assert r.json()["visibility"] == "SHOW"

    r = await client.get("/features/snapshot/c1", params={"profile_percent": 75, "feature_codes": ["TRADER_TOOLS", "AI_TOOLS"]})
    assert r.json() == [
        {"feature_code": "TRADER_TOOLS", "visibility": "RESTRICTED", "required_profile_percent": 60, "allowed": True},
        {"feature_code": "AI_TOOLS", "visibility": "SHOW", "required_profile_percent": None, "allowed": True},
    ]

    r = await client.put("/features/visibility/c1/TRADER_TOOLS", json={"visibility": "RESTRICTED", "conditionProfilePercent": 150})
    assert r.status_code == 400


async def test_bearer_token_authentication(client, policy, db):
    from app.main import app

    app.dependency_overrides.pop(get_current_user)

    r = await client.get("/users/me", headers={"Authorization": f"Bearer {create_access_token(policy.staff.id)}"})
    assert r.status_code == 200
    assert r.json()["email"] == "staff@example.com"

    r = await client.get("/users/me", headers={"Authorization": f"Bearer {create_access_token('01UNKNOWN')}"})
    assert r.status_code == 401

    r = await client.get("/users/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert r.status_code == 401

    r = await client.get("/users/me", headers={"Authorization": f"Bearer {create_access_token(policy.staff.id, expires_in=-10)}"})
    assert r.status_code == 401

    policy.staff.is_active = False
    await db.commit()
    r = await client.get("/users/me", headers={"Authorization": f"Bearer {create_access_token(policy.staff.id)}"})
    assert r.status_code == 403
