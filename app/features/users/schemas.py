"""
Pydantic schemas for user-related requests and responses.
"""
from datetime import datetime
from pydantic import BaseModel, EmailStr, Field

from app.features.permissions.schemas import OverrideResponse


class UserBase(BaseModel):
    """Base user schema with common fields."""
    email: EmailStr
    name: str = Field(..., min_length=1, max_length=255)


class UserResponse(UserBase):
    """Schema for user responses."""
    id: str
    is_active: bool
    last_login_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class UserPublic(BaseModel):
    """Public user information (limited fields)."""
    id: str
    name: str

    model_config = {"from_attributes": True}


class UserAccessResponse(BaseModel):
    """
    A user's roles, the permissions those roles grant, the stored overrides
    and the resulting effective permission set.
    """
    user: UserResponse
    roles: list[str]
    is_super: bool
    role_permissions: list[str]
    overrides: list[OverrideResponse]
    effective_permissions: list[str]


class UserRolesUpdate(BaseModel):
    role_codes: list[str] = Field(..., alias="roleCodes")

    model_config = {"populate_by_name": True}


class UserOverrideUpdate(BaseModel):
    """Single override write; INHERIT removes the stored row."""
    effect: str = Field(..., description="ALLOW, DENY or INHERIT")
    reason: str | None = Field(None, max_length=500)
