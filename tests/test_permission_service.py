import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.core.errors import ConflictError, NotFoundError, PolicyValidationError, ProtectedEntityError
from app.features.permissions import service
from app.features.permissions.models import OverrideEffect, UserOverride
from app.features.users.service import assign_roles, get_user_role_codes


async def test_matrix_replace_is_total(db, policy):
    await service.create_permission(db, {"code": "A", "name": "A", "module": "m"})
    await service.create_permission(db, {"code": "B", "name": "B", "module": "m"})
    await service.create_permission(db, {"code": "C", "name": "C", "module": "m"})

    await service.set_role_permissions(db, "STAFF", ["A", "B"])
    await service.set_role_permissions(db, "STAFF", ["B", "C"])

    assert await service.get_role_permissions(db, "STAFF") == ["B", "C"]


async def test_matrix_write_bumps_version(db, policy):
    before = (await service.get_role(db, "STAFF")).matrix_version
    role = await service.set_role_permissions(db, "STAFF", ["VIEW_REPORTS"])
    assert role.matrix_version == before + 1


async def test_stale_expected_version_is_a_conflict(db, policy):
    role = await service.get_role(db, "STAFF")
    version = role.matrix_version
    await service.set_role_permissions(db, "STAFF", ["VIEW_REPORTS"], expected_version=version)

    with pytest.raises(ConflictError):
        await service.set_role_permissions(db, "STAFF", ["EXPORT_REPORTS"], expected_version=version)
    assert await service.get_role_permissions(db, "STAFF") == ["VIEW_REPORTS"]


async def test_two_editors_with_the_same_version_only_one_wins(engine, policy):
    session_factory = async_sessionmaker(engine, expire_on_commit=False, autoflush=False)
    async with session_factory() as first, session_factory() as second:
        version = (await service.get_role(first, "STAFF")).matrix_version
        assert (await service.get_role(second, "STAFF")).matrix_version == version

        await service.set_role_permissions(first, "STAFF", ["VIEW_REPORTS"], expected_version=version)
        await first.commit()

        with pytest.raises(ConflictError) as exc:
            await service.set_role_permissions(second, "STAFF", ["EXPORT_REPORTS"], expected_version=version)
        assert exc.value.codes == ["STAFF"]
        await second.rollback()

    async with session_factory() as check:
        role = await service.get_role(check, "STAFF")
        assert role.matrix_version == version + 1
        assert await service.get_role_permissions(check, "STAFF") == ["VIEW_REPORTS"]


async def test_write_without_expected_version_reads_the_stored_version(engine, policy):
    session_factory = async_sessionmaker(engine, expire_on_commit=False, autoflush=False)
    async with session_factory() as first, session_factory() as second:
        stale = await service.get_role(second, "STAFF")
        await service.set_role_permissions(first, "STAFF", ["VIEW_REPORTS"])
        await first.commit()

        role = await service.set_role_permissions(second, "STAFF", ["EXPORT_REPORTS"])
        await second.commit()

    assert role is stale
    assert role.matrix_version == 3

async def test_super_role_matrix_is_protected(db, policy):
    with pytest.raises(ProtectedEntityError) as exc:
        await service.set_role_permissions(db, "SUPER_ADMIN", ["VIEW_REPORTS"])
    assert exc.value.codes == ["SUPER_ADMIN"]
    assert await service.get_role_permissions(db, "SUPER_ADMIN") == []


async def test_unknown_code_rejects_whole_matrix_write(db, policy):
    with pytest.raises(PolicyValidationError) as exc:
        await service.set_role_permissions(db, "STAFF", ["VIEW_REPORTS", "NOPE", "ALSO_NOPE"])

    assert exc.value.codes == ["ALSO_NOPE", "NOPE"]
    assert await service.get_role_permissions(db, "STAFF") == ["VIEW_ADMIN_DASHBOARD"]


async def test_inactive_permission_cannot_be_granted(db, policy):
    await service.update_permission(db, "EXPORT_REPORTS", {"is_active": False})

    with pytest.raises(PolicyValidationError):
        await service.set_role_permissions(db, "STAFF", ["EXPORT_REPORTS"])


async def test_referenced_permission_cannot_be_deactivated(db, policy):
    with pytest.raises(ProtectedEntityError) as exc:
        await service.update_permission(db, "VIEW_ADMIN_DASHBOARD", {"is_active": False})
    assert exc.value.codes == ["VIEW_ADMIN_DASHBOARD"]

    await service.set_user_override(db, policy.staff.id, "VIEW_REPORTS", "DENY")
    with pytest.raises(ProtectedEntityError):
        await service.update_permission(db, "VIEW_REPORTS", {"is_active": False})

    # role rows stay editable by read-modify-write
    current = (await service.get_matrix(db))["STAFF"]
    await service.set_role_permissions(db, "STAFF", current + ["EXPORT_REPORTS"])
    assert await service.get_role_permissions(db, "STAFF") == ["EXPORT_REPORTS", "VIEW_ADMIN_DASHBOARD"]

    await service.set_role_permissions(db, "STAFF", ["EXPORT_REPORTS"])
    await service.set_role_permissions(db, "ADMIN", ["MANAGE_PERMISSIONS", "MANAGE_SETTINGS"])
    permission = await service.update_permission(db, "VIEW_ADMIN_DASHBOARD", {"is_active": False, "name": "Dashboard"})
    assert permission.is_active is False


async def test_unknown_role(db, policy):
    with pytest.raises(NotFoundError):
        await service.set_role_permissions(db, "GHOST", [])


async def test_list_permissions_filters(db, policy):
    reports = await service.list_permissions(db, module="reports")
    assert [p.code for p in reports] == ["VIEW_REPORTS", "EXPORT_REPORTS"]

    found = await service.list_permissions(db, search="manage")
    assert {p.code for p in found} == {"MANAGE_USERS", "MANAGE_PERMISSIONS", "MANAGE_SETTINGS"}

    by_category = await service.permissions_by_category(db)
    assert set(by_category) == {"ADMIN", "REPORTS"}


async def test_upsert_permissions_rejects_category_change(db, policy):
    with pytest.raises(ConflictError) as exc:
        await service.upsert_permissions(db, [
            {"code": "NEW_ONE", "name": "New", "module": "m", "category": "TOOLS"},
            {"code": "VIEW_REPORTS", "name": "View Reports", "module": "reports", "category": "ADMIN"},
        ])

    assert exc.value.codes == ["VIEW_REPORTS"]
    assert await service.list_permissions(db, search="NEW_ONE") == []
    assert (await service.get_permission(db, "VIEW_REPORTS")).category == "REPORTS"


async def test_upsert_permissions_creates_and_updates(db, policy):
    outcome = await service.upsert_permissions(db, [
        {"code": "NEW_ONE", "name": "New", "module": "m", "category": "TOOLS"},
        {"code": "VIEW_REPORTS", "name": "Reports (read)", "module": "reports", "category": "REPORTS"},
        {"code": "EXPORT_REPORTS", "name": "Export Reports", "module": "reports", "category": "REPORTS"},
    ])

    assert outcome.created == ["NEW_ONE"]
    assert outcome.updated == ["VIEW_REPORTS"]
    assert outcome.unchanged == ["EXPORT_REPORTS"]


async def test_delete_permission_blocked_while_granted(db, policy):
    with pytest.raises(ProtectedEntityError):
        await service.delete_permission(db, "VIEW_ADMIN_DASHBOARD")

    await service.delete_permission(db, "EXPORT_REPORTS")
    with pytest.raises(NotFoundError):
        await service.get_permission(db, "EXPORT_REPORTS")


async def test_create_duplicate_permission_conflicts(db, policy):
    with pytest.raises(ConflictError):
        await service.create_permission(db, {"code": "VIEW_REPORTS", "name": "x", "module": "reports"})


async def test_role_lifecycle_rules(db, policy):
    with pytest.raises(ProtectedEntityError):
        await service.delete_role(db, "STAFF")
    with pytest.raises(ProtectedEntityError):
        await service.update_role(db, "SUPER_ADMIN", {"is_active": False})

    await assign_roles(db, policy.staff.id, ["STAFF", "TEMP"])
    with pytest.raises(ProtectedEntityError):
        await service.delete_role(db, "TEMP")

    await assign_roles(db, policy.staff.id, ["STAFF"])
    await service.delete_role(db, "TEMP")
    with pytest.raises(NotFoundError):
        await service.get_role(db, "TEMP")


async def test_list_roles_counts_users(db, policy):
    counts = {role.code: count for role, count in await service.list_roles(db)}
    assert counts == {"SUPER_ADMIN": 1, "ADMIN": 1, "STAFF": 1, "TEMP": 0}


async def test_assign_unknown_role_is_rejected(db, policy):
    with pytest.raises(PolicyValidationError) as exc:
        await assign_roles(db, policy.staff.id, ["STAFF", "GHOST"])
    assert exc.value.codes == ["GHOST"]
    assert await get_user_role_codes(db, policy.staff.id) == ["STAFF"]


async def test_group_members_replace_and_never_resolve(db, policy):
    group = await service.create_group(db, "REPORTING", "Reporting", ["VIEW_REPORTS"])
    await service.assign_group_permissions(db, group.id, ["EXPORT_REPORTS", "VIEW_REPORTS"])
    assert await service.get_group_permission_codes(db, group.id) == ["EXPORT_REPORTS", "VIEW_REPORTS"]

    access = await service.get_user_access(db, policy.staff.id)
    assert access["effective_permissions"] == ["VIEW_ADMIN_DASHBOARD"]


async def test_apply_group_to_role_unions_grants(db, policy):
    group = await service.create_group(db, "REPORTING", "Reporting", ["VIEW_REPORTS", "EXPORT_REPORTS"])

    codes = await service.apply_group_to_role(db, group.id, "STAFF")

    assert codes == ["EXPORT_REPORTS", "VIEW_ADMIN_DASHBOARD", "VIEW_REPORTS"]
    assert await service.get_role_permissions(db, "STAFF") == codes
    with pytest.raises(ProtectedEntityError):
        await service.apply_group_to_role(db, group.id, "SUPER_ADMIN")


async def test_group_with_unknown_code_is_not_created(db, policy):
    with pytest.raises(PolicyValidationError):
        await service.create_group(db, "BROKEN", "Broken", ["VIEW_REPORTS", "NOPE"])
    assert await service.list_groups(db) == []


async def test_system_default_group_cannot_be_deleted(db, policy):
    default = await service.create_group(db, "BASIC", "Basic", [], is_system_default=True)
    custom = await service.create_group(db, "CUSTOM", "Custom", [])

    with pytest.raises(ProtectedEntityError):
        await service.delete_group(db, default.id)

    await service.delete_group(db, custom.id)
    assert [g.code for g in await service.list_groups(db)] == ["BASIC"]
    assert {g.code for g in await service.list_groups(db, include_inactive=True)} == {"BASIC", "CUSTOM"}


async def test_duplicate_group_code_conflicts(db, policy):
    await service.create_group(db, "REPORTING", "Reporting", [])
    with pytest.raises(ConflictError):
        await service.create_group(db, "REPORTING", "Again", [])


async def test_override_set_replaces_and_prunes_inherit(db, policy):
    user_id = policy.staff.id
    await service.set_user_overrides(db, user_id, [
        {"permission_code": "MANAGE_USERS", "effect": "ALLOW"},
        {"permission_code": "VIEW_REPORTS", "effect": "DENY"},
    ])
    rows = await service.set_user_overrides(db, user_id, [
        {"permission_code": "MANAGE_USERS", "effect": "inherit"},
        {"permission_code": "VIEW_ADMIN_DASHBOARD", "effect": "deny"},
    ])

    assert [(r.permission_code, r.effect) for r in rows] == [("VIEW_ADMIN_DASHBOARD", OverrideEffect.DENY)]
    stored = await service.list_user_overrides(db, user_id)
    assert [(r.permission_code, r.effect) for r in stored] == [("VIEW_ADMIN_DASHBOARD", OverrideEffect.DENY)]


async def test_override_duplicates_last_entry_wins(db, policy):
    rows = await service.set_user_overrides(db, policy.staff.id, [
        {"permission_code": "MANAGE_USERS", "effect": "DENY"},
        {"permission_code": "MANAGE_USERS", "effect": "ALLOW"},
    ])
    assert [(r.permission_code, r.effect) for r in rows] == [("MANAGE_USERS", OverrideEffect.ALLOW)]


async def test_bad_override_effect_rejects_whole_set(db, policy):
    await service.set_user_overrides(db, policy.staff.id, [{"permission_code": "MANAGE_USERS", "effect": "ALLOW"}])

    with pytest.raises(PolicyValidationError) as exc:
        await service.set_user_overrides(db, policy.staff.id, [
            {"permission_code": "VIEW_REPORTS", "effect": "DENY"},
            {"permission_code": "EXPORT_REPORTS", "effect": "MAYBE"},
        ])
    assert exc.value.codes == ["EXPORT_REPORTS"]

    stored = await service.list_user_overrides(db, policy.staff.id)
    assert [r.permission_code for r in stored] == ["MANAGE_USERS"]


async def test_single_override_upserts_one_row(db, policy):
    user_id = policy.staff.id
    await service.set_user_override(db, user_id, "MANAGE_USERS", "ALLOW", reason="covering")
    await service.set_user_override(db, user_id, "MANAGE_USERS", "DENY")

    result = await db.execute(select(UserOverride).where(UserOverride.user_id == user_id))
    rows = result.scalars().all()
    assert len(rows) == 1
    assert rows[0].effect == OverrideEffect.DENY

    assert await service.set_user_override(db, user_id, "MANAGE_USERS", "INHERIT") is None
    assert await service.list_user_overrides(db, user_id) == []


async def test_override_for_unknown_user(db, policy):
    with pytest.raises(NotFoundError):
        await service.set_user_overrides(db, "01NOSUCHUSER0000000000000", [])


async def test_staff_scenario_through_the_store(db, policy):
    user_id = policy.staff.id
    assert (await service.get_user_access(db, user_id))["effective_permissions"] == ["VIEW_ADMIN_DASHBOARD"]

    await service.set_user_override(db, user_id, "MANAGE_USERS", "ALLOW")
    assert (await service.get_user_access(db, user_id))["effective_permissions"] == [
        "MANAGE_USERS", "VIEW_ADMIN_DASHBOARD"
    ]

    await service.set_user_override(db, user_id, "VIEW_ADMIN_DASHBOARD", "DENY")
    access = await service.get_user_access(db, user_id)
    assert access["effective_permissions"] == ["MANAGE_USERS"]
    assert access["role_permissions"] == ["VIEW_ADMIN_DASHBOARD"]
    assert access["roles"] == ["STAFF"]
    assert access["is_super"] is False


async def test_snapshot_uses_stable_super_role_code(db, policy):
    snapshot = await service.load_policy_snapshot(db)
    assert snapshot.bypass_roles == {"SUPER_ADMIN"}

    access = await service.get_user_access(db, policy.root.id)
    assert access["is_super"] is True
    assert len(access["effective_permissions"]) == 6


async def test_inactive_role_grants_nothing(db, policy):
    await service.update_role(db, "TEMP", {"is_active": False})
    await service.set_role_permissions(db, "TEMP", ["VIEW_REPORTS"])

    snapshot = await service.load_policy_snapshot(db)
    assert "TEMP" not in snapshot.grants


async def test_inactive_user_has_empty_effective_set(db, policy):
    policy.admin.is_active = False
    await db.flush()

    access = await service.get_user_access(db, policy.admin.id)
    assert access["effective_permissions"] == []
    assert not await service.check_permission(db, policy.admin, "MANAGE_PERMISSIONS")
