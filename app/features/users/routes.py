"""
User feature routes: profile, role assignment and permission overrides.

Bodies accept camelCase aliases (roleCodes, permissionCode); responses use
the snake_case field names.
"""
from typing import Annotated
from fastapi import APIRouter, Depends, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.core.database.engine import get_db
from app.features.users.models import User
from app.features.users.schemas import (
    UserResponse,
    UserPublic,
    UserAccessResponse,
    UserRolesUpdate,
    UserOverrideUpdate,
)
from app.features.users.dependencies import get_current_user
from app.features.users.service import assign_roles, get_user
from app.features.permissions import service as permission_service
from app.features.permissions.dependencies import require_permission, record_audit
from app.features.permissions.schemas import OverrideResponse, UserOverridesUpdate


router = APIRouter(tags=["users"])

manage_permissions = require_permission(config.MANAGE_PERMISSIONS_CODE)


@router.get("/me", response_model=UserResponse)
async def get_current_user_profile(
    user: Annotated[User, Depends(get_current_user)]
):
    """Get current authenticated user's profile."""
    return user


@router.get("/me/access", response_model=UserAccessResponse)
async def get_current_user_access(
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Effective permissions of the caller, for gating UI controls."""
    return await permission_service.get_user_access(db, user.id)


@router.get("/", response_model=list[UserPublic])
async def list_users(
    admin: Annotated[User, Depends(manage_permissions)],
    db: Annotated[AsyncSession, Depends(get_db)],
    skip: int = 0,
    limit: int = 50
):
    """List all active users (public info only)."""
    result = await db.execute(
        select(User)
        .where(User.is_active == True)  # noqa: E712
        .order_by(User.name)
        .offset(skip)
        .limit(limit)
    )
    return result.scalars().all()


@router.get("/{user_id}", response_model=UserAccessResponse)
async def get_user_access(
    user_id: str,
    admin: Annotated[User, Depends(manage_permissions)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Roles, role-derived permissions, overrides and the computed effective set."""
    return await permission_service.get_user_access(db, user_id)


@router.put("/{user_id}/roles", response_model=UserAccessResponse)
async def set_user_roles(
    user_id: str,
    payload: UserRolesUpdate,
    request: Request,
    admin: Annotated[User, Depends(manage_permissions)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Replace the user's role assignments."""
    roles = await assign_roles(db, user_id, payload.role_codes, assigned_by_id=admin.id)
    record_audit(db, admin.id, "set_roles", "user", user_id, {"role_codes": roles}, request)
    await db.commit()
    return await permission_service.get_user_access(db, user_id)


@router.get("/{user_id}/overrides", response_model=list[OverrideResponse])
async def list_user_overrides(
    user_id: str,
    admin: Annotated[User, Depends(manage_permissions)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    user = await get_user(db, user_id)
    return await permission_service.list_user_overrides(db, user.id)


@router.put("/{user_id}/overrides", response_model=UserAccessResponse)
async def set_user_overrides(
    user_id: str,
    payload: UserOverridesUpdate,
    request: Request,
    admin: Annotated[User, Depends(manage_permissions)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Replace the user's entire override set."""
    items = [item.model_dump() for item in payload.overrides]
    rows = await permission_service.set_user_overrides(db, user_id, items, assigned_by_id=admin.id)
    record_audit(
        db, admin.id, "set_overrides", "user", user_id,
        {"overrides": {row.permission_code: row.effect.value for row in rows}}, request,
    )
    await db.commit()
    return await permission_service.get_user_access(db, user_id)


@router.put("/{user_id}/overrides/{permission_code}", response_model=UserAccessResponse)
async def set_user_override(
    user_id: str,
    permission_code: str,
    payload: UserOverrideUpdate,
    request: Request,
    admin: Annotated[User, Depends(manage_permissions)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Upsert one override; INHERIT clears it."""
    await permission_service.set_user_override(
        db, user_id, permission_code, payload.effect, payload.reason, assigned_by_id=admin.id
    )
    record_audit(
        db, admin.id, "set_override", "user", user_id,
        {"permission_code": permission_code, "effect": payload.effect.upper()}, request,
    )
    await db.commit()
    return await permission_service.get_user_access(db, user_id)
