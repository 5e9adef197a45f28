from sqlalchemy import func, select

from app.features.feature_flags.models import FeatureFlag
from app.features.permissions import service
from app.features.permissions.models import Permission, PermissionGroup
from scripts.seed_permissions import DEFAULT_PERMISSIONS, DEFAULT_ROLES, seed, seed_admin_user


async def test_seed_creates_default_policy(db):
    await seed(db)
    await db.commit()

    roles = {role.code: role for role, _ in await service.list_roles(db)}
    assert set(roles) == set(DEFAULT_ROLES)
    assert all(role.is_system for role in roles.values())
    assert roles["SUPER_ADMIN"].is_super

    matrix = await service.get_matrix(db)
    assert matrix["SUPER_ADMIN"] == []
    assert "MANAGE_PERMISSIONS" in matrix["ADMIN"]

    groups = await service.list_groups(db)
    assert [g.code for g in groups][:2] == ["DEFAULT_ADMIN", "SUPPORT_STAFF"]
    assert all(g.is_system_default for g in groups)

    flags = await db.execute(select(func.count()).select_from(FeatureFlag))
    assert flags.scalar() == 6


async def test_seed_is_idempotent_and_keeps_edits(db):
    await seed(db)
    await service.set_role_permissions(db, "STAFF", ["VIEW_REPORTS"])
    await db.commit()

    await seed(db)
    await db.commit()

    count = await db.execute(select(func.count()).select_from(Permission))
    assert count.scalar() == len(DEFAULT_PERMISSIONS)
    count = await db.execute(select(func.count()).select_from(PermissionGroup))
    assert count.scalar() == 6
    assert await service.get_role_permissions(db, "STAFF") == ["VIEW_REPORTS"]


async def test_seed_admin_user_is_super(db):
    await seed(db)
    admin = await seed_admin_user(db, "owner@example.com")
    await db.commit()

    access = await service.get_user_access(db, admin.id)
    assert access["is_super"] is True
    assert len(access["effective_permissions"]) == len(DEFAULT_PERMISSIONS)
