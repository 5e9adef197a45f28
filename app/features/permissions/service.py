"""
Policy store operations for the permission catalog, role matrix, permission
groups and user overrides.

Every mutating function validates its whole input before writing anything
and only flushes; the caller's transaction decides the commit. A rejected
call therefore leaves no partial state behind.
"""
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Iterable, Optional
from sqlalchemy import select, delete, insert, update, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.core.errors import (
    ConflictError,
    NotFoundError,
    PolicyValidationError,
    ProtectedEntityError,
)
from app.features.permissions.models import (
    OverrideEffect,
    Permission,
    PermissionGroup,
    PermissionGroupMember,
    Role,
    RoleGrant,
    UserOverride,
)
from app.features.permissions.resolver import (
    Actor,
    PolicySnapshot,
    effective_permissions,
    has_permission,
    is_bypass,
)
from app.features.users.models import User, user_roles
from app.features.users.service import get_user, load_actor
from app.utils import get_logger


log = get_logger(__name__)


def _dedupe(codes: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for code in codes:
        seen.setdefault(code, None)
    return list(seen)


async def _require_active_codes(db: AsyncSession, codes: Iterable[str]) -> None:
    """Raise PolicyValidationError naming every code that is missing or inactive."""
    wanted = set(codes)
    if not wanted:
        return
    result = await db.execute(
        select(Permission.code).where(Permission.code.in_(wanted), Permission.is_active == True)  # noqa: E712
    )
    missing = wanted - set(result.scalars().all())
    if missing:
        raise PolicyValidationError("Unknown or inactive permission codes", missing)


# ============================================================================
# Permission Catalog
# ============================================================================

async def get_permission(db: AsyncSession, code: str) -> Permission:
    permission = await db.get(Permission, code)
    if permission is None:
        raise NotFoundError(f"Permission {code} not found", [code])
    return permission


async def list_permissions(
    db: AsyncSession,
    module: Optional[str] = None,
    category: Optional[str] = None,
    search: Optional[str] = None,
    include_inactive: bool = False,
) -> list[Permission]:
    """List catalog entries, optionally filtered by module, category or a search term."""
    stmt = select(Permission)
    if not include_inactive:
        stmt = stmt.where(Permission.is_active == True)  # noqa: E712
    if module:
        stmt = stmt.where(Permission.module == module)
    if category:
        stmt = stmt.where(Permission.category == category)
    if search:
        pattern = f"%{search.strip()}%"
        stmt = stmt.where(or_(Permission.code.ilike(pattern), Permission.name.ilike(pattern)))
    stmt = stmt.order_by(Permission.module, Permission.sort_order, Permission.code)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def permissions_by_category(db: AsyncSession) -> dict[str, list[Permission]]:
    grouped: dict[str, list[Permission]] = defaultdict(list)
    for permission in await list_permissions(db):
        grouped[permission.category or "GENERAL"].append(permission)
    return dict(grouped)


async def create_permission(db: AsyncSession, data: dict[str, Any]) -> Permission:
    if await db.get(Permission, data["code"]) is not None:
        raise ConflictError(f"Permission {data['code']} already exists", [data["code"]])
    permission = Permission(**data)
    db.add(permission)
    await db.flush()
    log.info("Created permission %s", permission.code)
    return permission


async def _count_references(db: AsyncSession, code: str) -> int:
    """Role grants, user overrides and group members that name code."""
    references = 0
    for column in (RoleGrant.permission_code, UserOverride.permission_code, PermissionGroupMember.permission_code):
        result = await db.execute(select(func.count()).where(column == code))
        references += result.scalar() or 0
    return references


async def update_permission(db: AsyncSession, code: str, changes: dict[str, Any]) -> Permission:
    """
    Update descriptive fields or the active flag. Code, module and category
    stay fixed. A permission still granted, grouped or overridden cannot be
    deactivated; remove those references first.
    """
    permission = await get_permission(db, code)
    if changes.get("is_active") is False and permission.is_active and await _count_references(db, code):
        raise ProtectedEntityError(f"Permission {code} is still in use and cannot be deactivated", [code])
    for key in ("name", "description", "is_active", "sort_order"):
        if key in changes:
            setattr(permission, key, changes[key])
    await db.flush()
    return permission


async def delete_permission(db: AsyncSession, code: str) -> None:
    """Delete a catalog entry that nothing references anymore."""
    permission = await get_permission(db, code)
    if await _count_references(db, code):
        raise ProtectedEntityError(f"Permission {code} is still in use", [code])

    await db.delete(permission)
    await db.flush()
    log.info("Deleted permission %s", code)


@dataclass
class UpsertResult:
    created: list[str]
    updated: list[str]
    unchanged: list[str]


async def upsert_permissions(db: AsyncSession, items: list[dict[str, Any]]) -> UpsertResult:
    """
    Bulk create-or-update catalog entries.

    An entry whose category differs from the stored record (or from an
    earlier entry with the same code in the batch) is a conflict; the stored
    category wins and the whole batch is rejected.
    """
    by_code: dict[str, dict[str, Any]] = {}
    conflicts: set[str] = set()
    for item in items:
        item = {**item, "category": item.get("category") or "GENERAL"}
        prior = by_code.get(item["code"])
        if prior is not None and prior["category"] != item["category"]:
            conflicts.add(item["code"])
        by_code[item["code"]] = item

    result = await db.execute(select(Permission).where(Permission.code.in_(list(by_code))))
    existing = {p.code: p for p in result.scalars().all()}
    for code, item in by_code.items():
        current = existing.get(code)
        if current is not None and current.category != item["category"]:
            conflicts.add(code)
    if conflicts:
        raise ConflictError("Category of an existing permission cannot change", conflicts)

    outcome = UpsertResult(created=[], updated=[], unchanged=[])
    for code, item in by_code.items():
        current = existing.get(code)
        if current is None:
            db.add(Permission(**item))
            outcome.created.append(code)
            continue
        changed = False
        for key in ("name", "module", "description", "sort_order"):
            if key in item and getattr(current, key) != item[key]:
                setattr(current, key, item[key])
                changed = True
        (outcome.updated if changed else outcome.unchanged).append(code)

    await db.flush()
    log.info(
        "Upserted permissions: %d created, %d updated, %d unchanged",
        len(outcome.created), len(outcome.updated), len(outcome.unchanged),
    )
    return outcome


# ============================================================================
# Roles & Matrix
# ============================================================================

async def get_role(db: AsyncSession, code: str) -> Role:
    role = await db.get(Role, code)
    if role is None:
        raise NotFoundError(f"Role {code} not found", [code])
    return role


async def list_roles(db: AsyncSession, include_inactive: bool = False) -> list[tuple[Role, int]]:
    """Roles with the number of users assigned to each, system roles first."""
    user_count = (
        select(user_roles.c.role_code, func.count().label("users"))
        .group_by(user_roles.c.role_code)
        .subquery()
    )
    stmt = (
        select(Role, func.coalesce(user_count.c.users, 0))
        .outerjoin(user_count, user_count.c.role_code == Role.code)
        .order_by(Role.is_system.desc(), Role.sort_order, Role.code)
    )
    if not include_inactive:
        stmt = stmt.where(Role.is_active == True)  # noqa: E712
    result = await db.execute(stmt)
    return [(role, count) for role, count in result.all()]


async def create_role(db: AsyncSession, data: dict[str, Any]) -> Role:
    if await db.get(Role, data["code"]) is not None:
        raise ConflictError(f"Role {data['code']} already exists", [data["code"]])
    role = Role(**data)
    db.add(role)
    await db.flush()
    log.info("Created role %s", role.code)
    return role


async def update_role(db: AsyncSession, code: str, changes: dict[str, Any]) -> Role:
    role = await get_role(db, code)
    if changes.get("is_active") is False and role.is_system:
        raise ProtectedEntityError(f"System role {code} cannot be deactivated", [code])
    for key in ("name", "description", "is_active", "sort_order"):
        if key in changes:
            setattr(role, key, changes[key])
    await db.flush()
    return role


async def delete_role(db: AsyncSession, code: str) -> None:
    role = await get_role(db, code)
    if role.is_system:
        raise ProtectedEntityError(f"System role {code} cannot be deleted", [code])

    result = await db.execute(select(func.count()).where(user_roles.c.role_code == code))
    if result.scalar():
        raise ProtectedEntityError(f"Role {code} is still assigned to users", [code])

    await db.execute(delete(RoleGrant).where(RoleGrant.role_code == code))
    await db.delete(role)
    await db.flush()
    log.info("Deleted role %s", code)


async def get_role_permissions(db: AsyncSession, code: str) -> list[str]:
    result = await db.execute(
        select(RoleGrant.permission_code)
        .where(RoleGrant.role_code == code)
        .order_by(RoleGrant.permission_code)
    )
    return list(result.scalars().all())


async def get_matrix(db: AsyncSession) -> dict[str, list[str]]:
    """Role code -> granted permission codes, for every active role."""
    roles = await list_roles(db)
    matrix: dict[str, list[str]] = {role.code: [] for role, _ in roles}
    result = await db.execute(
        select(RoleGrant.role_code, RoleGrant.permission_code)
        .order_by(RoleGrant.role_code, RoleGrant.permission_code)
    )
    for role_code, permission_code in result.all():
        if role_code in matrix:
            matrix[role_code].append(permission_code)
    return matrix


async def set_role_permissions(
    db: AsyncSession,
    role_code: str,
    permission_codes: Iterable[str],
    expected_version: Optional[int] = None,
) -> Role:
    """
    Replace the role's whole grant set.

    The super role is protected. Unknown codes reject the call before
    anything is written. The version bump is a single conditional UPDATE;
    with expected_version set it only matches while the stored version still
    equals it, so a concurrent edit that got there first is reported as a
    conflict. Without it the last writer wins.
    """
    role = await get_role(db, role_code)
    if role.is_super:
        raise ProtectedEntityError("The super role's permissions cannot be edited", [role_code])

    wanted = _dedupe(permission_codes)
    await _require_active_codes(db, wanted)

    stmt = (
        update(Role)
        .where(Role.code == role_code)
        .values(matrix_version=Role.matrix_version + 1)
        .execution_options(synchronize_session=False)
    )
    if expected_version is not None:
        stmt = stmt.where(Role.matrix_version == expected_version)
    result = await db.execute(stmt)
    if result.rowcount == 0:
        raise ConflictError(f"Role {role_code} changed since version {expected_version}", [role_code])

    await db.execute(delete(RoleGrant).where(RoleGrant.role_code == role_code))
    if wanted:
        await db.execute(
            insert(RoleGrant),
            [{"role_code": role_code, "permission_code": code} for code in wanted],
        )
    await db.refresh(role, ["matrix_version"])

    log.info("Role %s now grants %d permissions (version %d)", role_code, len(wanted), role.matrix_version)
    return role


# ============================================================================
# Permission Groups
# ============================================================================

async def get_group(db: AsyncSession, group_id: str) -> PermissionGroup:
    group = await db.get(PermissionGroup, group_id)
    if group is None:
        raise NotFoundError(f"Permission group {group_id} not found", [group_id])
    return group


async def get_group_permission_codes(db: AsyncSession, group_id: str) -> list[str]:
    result = await db.execute(
        select(PermissionGroupMember.permission_code)
        .where(PermissionGroupMember.group_id == group_id)
        .order_by(PermissionGroupMember.permission_code)
    )
    return list(result.scalars().all())


async def list_groups(db: AsyncSession, include_inactive: bool = False) -> list[PermissionGroup]:
    stmt = select(PermissionGroup).order_by(PermissionGroup.sort_order, PermissionGroup.code)
    if not include_inactive:
        stmt = stmt.where(PermissionGroup.is_active == True)  # noqa: E712
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def _replace_group_members(db: AsyncSession, group_id: str, codes: list[str]) -> None:
    await db.execute(delete(PermissionGroupMember).where(PermissionGroupMember.group_id == group_id))
    if codes:
        await db.execute(
            insert(PermissionGroupMember),
            [{"group_id": group_id, "permission_code": code} for code in codes],
        )


async def create_group(
    db: AsyncSession,
    code: str,
    name: str,
    permission_codes: Iterable[str] = (),
    description: Optional[str] = None,
    is_system_default: bool = False,
) -> PermissionGroup:
    wanted = _dedupe(permission_codes)
    await _require_active_codes(db, wanted)

    existing = await db.execute(select(PermissionGroup.id).where(PermissionGroup.code == code))
    if existing.first() is not None:
        raise ConflictError(f"Permission group {code} already exists", [code])

    group = PermissionGroup(
        code=code, name=name, description=description, is_system_default=is_system_default
    )
    db.add(group)
    try:
        await db.flush()
    except IntegrityError:
        raise ConflictError(f"Permission group {code} already exists", [code])
    await _replace_group_members(db, group.id, wanted)
    await db.flush()
    log.info("Created permission group %s with %d permissions", code, len(wanted))
    return group


async def update_group(db: AsyncSession, group_id: str, changes: dict[str, Any]) -> PermissionGroup:
    group = await get_group(db, group_id)
    for key in ("name", "description", "sort_order"):
        if key in changes:
            setattr(group, key, changes[key])
    await db.flush()
    return group


async def assign_group_permissions(db: AsyncSession, group_id: str, permission_codes: Iterable[str]) -> list[str]:
    """Replace the group's member set."""
    group = await get_group(db, group_id)
    wanted = _dedupe(permission_codes)
    await _require_active_codes(db, wanted)
    await _replace_group_members(db, group.id, wanted)
    await db.flush()
    return wanted


async def delete_group(db: AsyncSession, group_id: str) -> PermissionGroup:
    """Deactivate a group. System default groups are protected."""
    group = await get_group(db, group_id)
    if group.is_system_default:
        raise ProtectedEntityError(f"System default group {group.code} cannot be deleted", [group.code])
    group.is_active = False
    await db.flush()
    log.info("Deactivated permission group %s", group.code)
    return group


async def apply_group_to_role(db: AsyncSession, group_id: str, role_code: str) -> list[str]:
    """
    Expand the group's members into the role's grants (union).

    Goes through set_role_permissions, so the super role stays protected and
    inactive members are rejected.
    """
    group = await get_group(db, group_id)
    if not group.is_active:
        raise PolicyValidationError(f"Permission group {group.code} is inactive", [group.code])
    current = await get_role_permissions(db, role_code)
    members = await get_group_permission_codes(db, group.id)
    await set_role_permissions(db, role_code, current + members)
    return sorted(set(current) | set(members))


# ============================================================================
# User Overrides
# ============================================================================

def parse_effect(value: Any) -> OverrideEffect:
    if isinstance(value, OverrideEffect):
        return value
    try:
        return OverrideEffect(str(value).strip().upper())
    except ValueError:
        raise PolicyValidationError(f"Invalid override effect {value!r}", [str(value)])


async def list_user_overrides(db: AsyncSession, user_id: str) -> list[UserOverride]:
    result = await db.execute(
        select(UserOverride)
        .where(UserOverride.user_id == user_id)
        .order_by(UserOverride.permission_code)
    )
    return list(result.scalars().all())


async def set_user_overrides(
    db: AsyncSession,
    user_id: str,
    overrides: Iterable[dict[str, Any]],
    assigned_by_id: Optional[str] = None,
) -> list[UserOverride]:
    """
    Replace the user's entire override set.

    Items are {permission_code, effect, reason?}. INHERIT items are dropped;
    for a code listed twice the last item wins.
    """
    user = await get_user(db, user_id)

    latest: dict[str, tuple[OverrideEffect, Optional[str]]] = {}
    bad_effects: list[str] = []
    for item in overrides:
        try:
            effect = parse_effect(item.get("effect"))
        except PolicyValidationError:
            bad_effects.append(item.get("permission_code") or str(item.get("effect")))
            continue
        latest[item["permission_code"]] = (effect, item.get("reason"))
    if bad_effects:
        raise PolicyValidationError("Invalid override effect", bad_effects)

    stored = {code: value for code, value in latest.items() if value[0] != OverrideEffect.INHERIT}
    await _require_active_codes(db, stored)

    await db.execute(delete(UserOverride).where(UserOverride.user_id == user.id))
    rows = [
        UserOverride(
            user_id=user.id,
            permission_code=code,
            effect=effect,
            reason=reason,
            assigned_by_id=assigned_by_id,
        )
        for code, (effect, reason) in sorted(stored.items())
    ]
    db.add_all(rows)
    await db.flush()

    log.info("Overrides of user %s replaced (%d rows)", user.id, len(rows))
    return rows


async def set_user_override(
    db: AsyncSession,
    user_id: str,
    permission_code: str,
    effect: Any,
    reason: Optional[str] = None,
    assigned_by_id: Optional[str] = None,
) -> Optional[UserOverride]:
    """Upsert a single override. INHERIT removes the row and returns None."""
    user = await get_user(db, user_id)
    effect = parse_effect(effect)

    result = await db.execute(
        select(UserOverride).where(
            UserOverride.user_id == user.id,
            UserOverride.permission_code == permission_code,
        )
    )
    existing = result.scalar_one_or_none()

    if effect == OverrideEffect.INHERIT:
        if existing is not None:
            await db.delete(existing)
            await db.flush()
        return None

    await _require_active_codes(db, [permission_code])
    if existing is None:
        existing = UserOverride(user_id=user.id, permission_code=permission_code)
        db.add(existing)
    existing.effect = effect
    existing.reason = reason
    existing.assigned_by_id = assigned_by_id
    await db.flush()
    return existing


# ============================================================================
# Resolution
# ============================================================================

async def load_policy_snapshot(db: AsyncSession, user_ids: Optional[Iterable[str]] = None) -> PolicySnapshot:
    """
    Read the current policy into an immutable snapshot.

    Overrides are loaded only for user_ids when given, otherwise for every
    user.
    """
    result = await db.execute(select(Permission.code).where(Permission.is_active == True))  # noqa: E712
    catalog = frozenset(result.scalars().all())

    result = await db.execute(select(Role.code, Role.is_system, Role.is_active))
    active_roles: set[str] = set()
    bypass_roles: set[str] = set()
    for code, is_system, is_active in result.all():
        if is_system and code == config.SUPER_ROLE_CODE:
            bypass_roles.add(code)
        if is_active:
            active_roles.add(code)

    grants: dict[str, set[str]] = defaultdict(set)
    result = await db.execute(select(RoleGrant.role_code, RoleGrant.permission_code))
    for role_code, permission_code in result.all():
        if role_code in active_roles:
            grants[role_code].add(permission_code)

    stmt = select(UserOverride.user_id, UserOverride.permission_code, UserOverride.effect)
    if user_ids is not None:
        stmt = stmt.where(UserOverride.user_id.in_(list(user_ids)))
    overrides: dict[str, dict[str, OverrideEffect]] = defaultdict(dict)
    result = await db.execute(stmt)
    for user_id, permission_code, effect in result.all():
        if effect != OverrideEffect.INHERIT:
            overrides[user_id][permission_code] = OverrideEffect(effect)

    return PolicySnapshot(
        catalog=catalog,
        grants={code: frozenset(codes) for code, codes in grants.items()},
        overrides={user_id: dict(rows) for user_id, rows in overrides.items()},
        bypass_roles=frozenset(bypass_roles),
    )


async def resolve_for_user(db: AsyncSession, user: User) -> tuple[PolicySnapshot, Actor]:
    snapshot = await load_policy_snapshot(db, [user.id])
    actor = await load_actor(db, user)
    return snapshot, actor


async def check_permission(db: AsyncSession, user: User, permission_code: str) -> bool:
    snapshot, actor = await resolve_for_user(db, user)
    return has_permission(snapshot, actor, permission_code)


async def get_user_access(db: AsyncSession, user_id: str) -> dict[str, Any]:
    """
    Everything an admin screen needs about one user's access: roles,
    role-derived permissions, stored overrides and the computed effective set.
    """
    user = await get_user(db, user_id)
    snapshot, actor = await resolve_for_user(db, user)
    return {
        "user": user,
        "roles": sorted(actor.role_codes),
        "is_super": is_bypass(snapshot, actor),
        "role_permissions": sorted(snapshot.role_permissions(actor.role_codes)),
        "overrides": await list_user_overrides(db, user.id),
        "effective_permissions": sorted(effective_permissions(snapshot, actor)),
    }
