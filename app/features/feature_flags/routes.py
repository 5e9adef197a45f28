"""
Feature gating API routes.

Flags and per-owner overrides answer "is feature F enabled for owner O";
visibility rules answer "is feature F shown to customer C". The two are
administered and queried separately.

Request bodies accept camelCase aliases (featureCode, isEnabled,
conditionProfilePercent); responses use the snake_case field names.
"""
from typing import List
from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.core.database.engine import get_db
from app.features.users.dependencies import get_current_user
from app.features.users.models import User
from app.features.permissions.dependencies import require_permission, record_audit
from app.features.feature_flags import service
from app.features.feature_flags.models import OwnerType
from app.features.feature_flags.schemas import (
    FeatureFlagUpsert,
    FeatureFlagResponse,
    FeatureAccessUpdate,
    FeatureAccessResponse,
    FeatureCheckResponse,
    VisibilityUpsert,
    VisibilityResponse,
    VisibilityResolveResponse,
    FeatureSnapshotItem,
)


router = APIRouter()

manage_features = require_permission(config.MANAGE_FEATURES_CODE)


# ============================================================================
# Flags
# ============================================================================

@router.get("/flags", response_model=List[FeatureFlagResponse])
async def list_flags(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    return await service.list_flags(db)


@router.get("/flags/{key}", response_model=FeatureFlagResponse)
async def get_flag(
    key: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    return await service.get_flag(db, key)


@router.put("/flags/{key}", response_model=FeatureFlagResponse)
async def set_flag(
    key: str,
    payload: FeatureFlagUpsert,
    request: Request,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(manage_features)
):
    """Create or update a global flag."""
    flag = await service.set_flag(db, key, payload.is_enabled, payload.name, payload.description)
    record_audit(db, admin.id, "set", "feature_flag", key, {"is_enabled": payload.is_enabled}, request)
    await db.commit()
    return flag


@router.delete("/flags/{key}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_flag(
    key: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(manage_features)
):
    await service.delete_flag(db, key)
    record_audit(db, admin.id, "delete", "feature_flag", key, None, request)
    await db.commit()
    return None


# ============================================================================
# Owner access
# ============================================================================

@router.get("/access", response_model=List[FeatureAccessResponse])
async def list_owner_feature_access(
    owner_type: OwnerType,
    owner_id: str,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(manage_features)
):
    """Every flag with the owner's effective value."""
    return await service.list_owner_feature_access(db, owner_type, owner_id)


@router.put("/access", response_model=List[FeatureAccessResponse])
async def set_owner_feature_access(
    owner_type: OwnerType,
    owner_id: str,
    payload: FeatureAccessUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(manage_features)
):
    """Bulk upsert of the owner's overrides; is_enabled null clears one."""
    items = [item.model_dump() for item in payload.features]
    access = await service.set_owner_feature_access(db, owner_type, owner_id, items, assigned_by_id=admin.id)
    record_audit(
        db, admin.id, "set_access", "feature_owner", f"{owner_type.value}:{owner_id}",
        {"features": {item["feature_code"]: item["is_enabled"] for item in items}}, request,
    )
    await db.commit()
    return access


@router.get("/access/check", response_model=FeatureCheckResponse)
async def check_feature(
    owner_type: OwnerType,
    owner_id: str,
    feature_code: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    enabled = await service.check_feature(db, owner_type, owner_id, feature_code)
    return FeatureCheckResponse(owner_type=owner_type, owner_id=owner_id, feature_code=feature_code, is_enabled=enabled)


# ============================================================================
# Customer visibility
# ============================================================================

@router.get("/visibility/{customer_id}", response_model=List[VisibilityResponse])
async def list_customer_visibility(
    customer_id: str,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(manage_features)
):
    return await service.list_customer_visibility(db, customer_id)


@router.put("/visibility/{customer_id}/{feature_code}", response_model=VisibilityResponse)
async def set_customer_visibility(
    customer_id: str,
    feature_code: str,
    payload: VisibilityUpsert,
    request: Request,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(manage_features)
):
    row = await service.set_customer_visibility(
        db, customer_id, feature_code, payload.visibility,
        payload.condition_profile_percent, payload.reason, assigned_by_id=admin.id,
    )
    record_audit(
        db, admin.id, "set_visibility", "customer", customer_id,
        {"feature_code": feature_code, "visibility": payload.visibility.value,
         "condition_profile_percent": payload.condition_profile_percent}, request,
    )
    await db.commit()
    return row


@router.delete("/visibility/{customer_id}/{feature_code}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_customer_visibility(
    customer_id: str,
    feature_code: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(manage_features)
):
    await service.remove_customer_visibility(db, customer_id, feature_code)
    record_audit(db, admin.id, "remove_visibility", "customer", customer_id, {"feature_code": feature_code}, request)
    await db.commit()
    return None


@router.get("/visibility/{customer_id}/{feature_code}/resolve", response_model=VisibilityResolveResponse)
async def resolve_customer_visibility(
    customer_id: str,
    feature_code: str,
    profile_percent: float = Query(0, ge=0, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    visibility = await service.check_visibility(db, customer_id, feature_code, profile_percent)
    return VisibilityResolveResponse(
        customer_id=customer_id, feature_code=feature_code, profile_percent=profile_percent, visibility=visibility
    )


@router.get("/snapshot/{customer_id}", response_model=List[FeatureSnapshotItem])
async def customer_feature_snapshot(
    customer_id: str,
    profile_percent: float = Query(0, ge=0, le=100),
    feature_codes: List[str] = Query(default=[]),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Visibility of the portal features for one customer."""
    return await service.feature_snapshot(db, customer_id, profile_percent, feature_codes)
