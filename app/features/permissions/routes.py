"""
Permission management API routes.

Provides endpoints for the permission catalog, roles and the role-permission
matrix, permission groups, permission checks and the audit trail.
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, Request, status
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.core.database.engine import get_db
from app.features.users.dependencies import get_current_user
from app.features.users.models import User
from app.features.permissions.models import AuditLog, Role
from app.features.permissions.schemas import (
    PermissionCreate,
    PermissionUpdate,
    PermissionResponse,
    PermissionBulkUpsert,
    PermissionBulkResult,
    RoleCreate,
    RoleUpdate,
    RoleResponse,
    RoleWithPermissions,
    RolePermissionsUpdate,
    RolesPermissionsResponse,
    GroupCreate,
    GroupUpdate,
    GroupResponse,
    GroupWithPermissions,
    GroupPermissionsUpdate,
    GroupApplyResponse,
    PermissionCheckRequest,
    PermissionCheckResponse,
    AuditLogResponse,
    AuditLogListResponse,
)
from app.features.permissions.dependencies import require_permission, record_audit
from app.features.permissions.resolver import decide
from app.features.permissions import service
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter()

manage_permissions = require_permission(config.MANAGE_PERMISSIONS_CODE)


def _role_response(role: Role, user_count: int = 0) -> RoleResponse:
    return RoleResponse.model_validate(role).model_copy(update={"user_count": user_count})


# ============================================================================
# Matrix Editor
# ============================================================================

@router.get("/roles-permissions", response_model=RolesPermissionsResponse)
async def get_roles_permissions(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Roles, catalog and the full matrix in one response."""
    roles = await service.list_roles(db)
    permissions = await service.list_permissions(db)
    matrix = await service.get_matrix(db)
    return RolesPermissionsResponse(
        roles=[_role_response(role, count) for role, count in roles],
        permissions=[PermissionResponse.model_validate(p) for p in permissions],
        matrix=matrix,
    )


# ============================================================================
# Permission Routes
# ============================================================================

@router.get("/permissions", response_model=List[PermissionResponse])
async def list_permissions(
    module: Optional[str] = None,
    category: Optional[str] = None,
    search: Optional[str] = None,
    include_inactive: bool = False,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """List permissions with optional filtering."""
    return await service.list_permissions(db, module, category, search, include_inactive)


@router.get("/permissions/by-category", response_model=dict[str, List[PermissionResponse]])
async def list_permissions_by_category(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    return await service.permissions_by_category(db)


@router.post("/permissions", response_model=PermissionResponse, status_code=status.HTTP_201_CREATED)
async def create_permission(
    permission: PermissionCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(manage_permissions)
):
    """Create a new permission."""
    db_permission = await service.create_permission(db, permission.model_dump())
    record_audit(db, admin.id, "create", "permission", db_permission.code, permission.model_dump(), request)
    await db.commit()
    return db_permission


@router.post("/permissions/bulk", response_model=PermissionBulkResult)
async def upsert_permissions(
    payload: PermissionBulkUpsert,
    request: Request,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(manage_permissions)
):
    """Create or update many permissions at once. Category changes are rejected."""
    outcome = await service.upsert_permissions(db, [p.model_dump() for p in payload.permissions])
    record_audit(
        db, admin.id, "bulk_upsert", "permission", None,
        {"created": outcome.created, "updated": outcome.updated}, request,
    )
    await db.commit()
    return PermissionBulkResult(created=outcome.created, updated=outcome.updated, unchanged=outcome.unchanged)


@router.get("/permissions/{permission_code}", response_model=PermissionResponse)
async def get_permission(
    permission_code: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    return await service.get_permission(db, permission_code)


@router.put("/permissions/{permission_code}", response_model=PermissionResponse)
async def update_permission(
    permission_code: str,
    permission_update: PermissionUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(manage_permissions)
):
    update_data = permission_update.model_dump(exclude_unset=True)
    db_permission = await service.update_permission(db, permission_code, update_data)
    record_audit(db, admin.id, "update", "permission", permission_code, update_data, request)
    await db.commit()
    return db_permission


@router.delete("/permissions/{permission_code}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_permission(
    permission_code: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(manage_permissions)
):
    """Delete a permission that no role, group or override references."""
    await service.delete_permission(db, permission_code)
    record_audit(db, admin.id, "delete", "permission", permission_code, None, request)
    await db.commit()
    return None


# ============================================================================
# Role Routes
# ============================================================================

@router.get("/roles", response_model=List[RoleResponse])
async def list_roles(
    include_inactive: bool = False,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """List roles with the number of users holding each."""
    roles = await service.list_roles(db, include_inactive)
    return [_role_response(role, count) for role, count in roles]


@router.post("/roles", response_model=RoleResponse, status_code=status.HTTP_201_CREATED)
async def create_role(
    role: RoleCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(manage_permissions)
):
    db_role = await service.create_role(db, role.model_dump())
    record_audit(db, admin.id, "create", "role", db_role.code, role.model_dump(), request)
    await db.commit()
    return _role_response(db_role)


@router.get("/roles/{role_code}", response_model=RoleWithPermissions)
async def get_role(
    role_code: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Get a specific role with its granted permission codes."""
    role = await service.get_role(db, role_code)
    codes = await service.get_role_permissions(db, role_code)
    return RoleWithPermissions(**_role_response(role).model_dump(), permission_codes=codes)


@router.put("/roles/{role_code}", response_model=RoleResponse)
async def update_role(
    role_code: str,
    role_update: RoleUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(manage_permissions)
):
    update_data = role_update.model_dump(exclude_unset=True)
    db_role = await service.update_role(db, role_code, update_data)
    record_audit(db, admin.id, "update", "role", role_code, update_data, request)
    await db.commit()
    return _role_response(db_role)


@router.delete("/roles/{role_code}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_role(
    role_code: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(manage_permissions)
):
    await service.delete_role(db, role_code)
    record_audit(db, admin.id, "delete", "role", role_code, None, request)
    await db.commit()
    return None


@router.put("/roles/{role_code}/permissions", response_model=RoleWithPermissions)
async def set_role_permissions(
    role_code: str,
    payload: RolePermissionsUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(manage_permissions)
):
    """Replace the role's row of the matrix."""
    role = await service.set_role_permissions(db, role_code, payload.permission_ids, payload.expected_version)
    codes = await service.get_role_permissions(db, role_code)
    record_audit(
        db, admin.id, "set_permissions", "role", role_code,
        {"permission_codes": codes, "matrix_version": role.matrix_version}, request,
    )
    await db.commit()
    return RoleWithPermissions(**_role_response(role).model_dump(), permission_codes=codes)


# ============================================================================
# Group Routes
# ============================================================================

async def _group_detail(db: AsyncSession, group) -> GroupWithPermissions:
    codes = await service.get_group_permission_codes(db, group.id)
    return GroupWithPermissions(**GroupResponse.model_validate(group).model_dump(), permission_codes=codes)


@router.get("/groups", response_model=List[GroupResponse])
async def list_groups(
    include_inactive: bool = False,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    return await service.list_groups(db, include_inactive)


@router.post("/groups", response_model=GroupWithPermissions, status_code=status.HTTP_201_CREATED)
async def create_group(
    group: GroupCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(manage_permissions)
):
    db_group = await service.create_group(
        db, group.code, group.name, group.permission_codes, description=group.description
    )
    record_audit(db, admin.id, "create", "group", db_group.id, group.model_dump(), request)
    await db.commit()
    return await _group_detail(db, db_group)


@router.get("/groups/{group_id}", response_model=GroupWithPermissions)
async def get_group(
    group_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    group = await service.get_group(db, group_id)
    return await _group_detail(db, group)


@router.put("/groups/{group_id}", response_model=GroupWithPermissions)
async def update_group(
    group_id: str,
    group_update: GroupUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(manage_permissions)
):
    update_data = group_update.model_dump(exclude_unset=True)
    db_group = await service.update_group(db, group_id, update_data)
    record_audit(db, admin.id, "update", "group", group_id, update_data, request)
    await db.commit()
    return await _group_detail(db, db_group)


@router.delete("/groups/{group_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_group(
    group_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(manage_permissions)
):
    """Deactivate a group. System default groups cannot be deleted."""
    await service.delete_group(db, group_id)
    record_audit(db, admin.id, "delete", "group", group_id, None, request)
    await db.commit()
    return None


@router.put("/groups/{group_id}/permissions", response_model=GroupWithPermissions)
async def assign_group_permissions(
    group_id: str,
    payload: GroupPermissionsUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(manage_permissions)
):
    """Replace the group's member permissions."""
    codes = await service.assign_group_permissions(db, group_id, payload.permission_codes)
    record_audit(db, admin.id, "set_permissions", "group", group_id, {"permission_codes": codes}, request)
    await db.commit()
    group = await service.get_group(db, group_id)
    return await _group_detail(db, group)


@router.post("/groups/{group_id}/apply/{role_code}", response_model=GroupApplyResponse)
async def apply_group_to_role(
    group_id: str,
    role_code: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(manage_permissions)
):
    """Add every permission of the group to the role's grants."""
    codes = await service.apply_group_to_role(db, group_id, role_code)
    record_audit(db, admin.id, "apply_group", "role", role_code, {"group_id": group_id}, request)
    await db.commit()
    return GroupApplyResponse(role_code=role_code, permission_codes=codes)


# ============================================================================
# Permission Check Routes
# ============================================================================

@router.post("/check", response_model=PermissionCheckResponse)
async def check_permission(
    check_request: PermissionCheckRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Check if the current user has a specific permission."""
    snapshot, actor = await service.resolve_for_user(db, current_user)
    code = check_request.permission_code
    allowed, reason = decide(snapshot, actor, code)
    return PermissionCheckResponse(permission_code=code, has_permission=allowed, reason=reason)


# ============================================================================
# Audit Log Routes
# ============================================================================

@router.get("/audit-logs", response_model=AuditLogListResponse)
async def list_audit_logs(
    skip: int = 0,
    limit: int = 50,
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(manage_permissions)
):
    """List audit logs with optional filtering."""
    stmt = select(AuditLog)

    if user_id:
        stmt = stmt.where(AuditLog.user_id == user_id)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if resource_type:
        stmt = stmt.where(AuditLog.resource_type == resource_type)
    if resource_id:
        stmt = stmt.where(AuditLog.resource_id == resource_id)

    # Get total count
    count_stmt = select(func.count()).select_from(stmt.subquery())
    total_result = await db.execute(count_stmt)
    total = total_result.scalar() or 0

    # Get paginated results
    stmt = stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    logs = result.scalars().all()

    pages = (total + limit - 1) // limit if limit > 0 else 0
    page = (skip // limit) + 1 if limit > 0 else 1

    return AuditLogListResponse(
        items=[AuditLogResponse.model_validate(entry) for entry in logs],
        total=total,
        page=page,
        page_size=limit,
        pages=pages
    )
