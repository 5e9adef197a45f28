"""
Pydantic schemas for feature flags, owner access and customer visibility.
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator

from app.features.feature_flags.models import OwnerType, Visibility


# ============================================================================
# Flags
# ============================================================================

class FeatureFlagUpsert(BaseModel):
    is_enabled: bool = Field(..., alias="isEnabled")
    name: Optional[str] = Field(None, max_length=150)
    description: Optional[str] = Field(None, max_length=1000)

    model_config = ConfigDict(populate_by_name=True)


class FeatureFlagResponse(BaseModel):
    id: str
    key: str
    name: Optional[str]
    description: Optional[str]
    is_enabled: bool
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Owner access
# ============================================================================

class FeatureAccessItem(BaseModel):
    feature_code: str = Field(..., alias="featureCode")
    is_enabled: Optional[bool] = Field(
        None, alias="isEnabled", description="null clears the override and falls back to the global flag"
    )

    model_config = ConfigDict(populate_by_name=True)


class FeatureAccessUpdate(BaseModel):
    features: List[FeatureAccessItem]


class FeatureAccessResponse(BaseModel):
    feature_code: str
    name: Optional[str] = None
    global_enabled: bool
    is_enabled: bool
    overridden: bool


class FeatureCheckResponse(BaseModel):
    owner_type: OwnerType
    owner_id: str
    feature_code: str
    is_enabled: bool


# ============================================================================
# Customer visibility
# ============================================================================

class VisibilityUpsert(BaseModel):
    visibility: Visibility
    condition_profile_percent: Optional[int] = Field(None, alias="conditionProfilePercent", ge=0, le=100)
    reason: Optional[str] = Field(None, max_length=500)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator('visibility', mode='before')
    @classmethod
    def visibility_uppercase(cls, v):
        return v.upper() if isinstance(v, str) else v


class VisibilityResponse(BaseModel):
    customer_id: str
    feature_code: str
    visibility: Visibility
    condition_profile_percent: Optional[int]
    reason: Optional[str]
    assigned_by_id: Optional[str]
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class VisibilityResolveResponse(BaseModel):
    customer_id: str
    feature_code: str
    profile_percent: float
    visibility: Visibility


class FeatureSnapshotItem(BaseModel):
    feature_code: str
    visibility: Visibility
    required_profile_percent: Optional[int] = None
    allowed: bool
