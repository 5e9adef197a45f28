"""
Pydantic schemas for permission management.

Request and response models for the catalog, roles, the role-permission
matrix, permission groups, user overrides and audit logs.
"""
from datetime import datetime
from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator

from app.features.permissions.models import OverrideEffect


def _code(v: str) -> str:
    v = v.strip().upper()
    if not v.replace('_', '').replace('.', '').replace(':', '').isalnum():
        raise ValueError('Code must contain only alphanumeric characters, underscores, dots, and colons')
    return v


# ============================================================================
# Permission Schemas
# ============================================================================

class PermissionBase(BaseModel):
    """Base permission schema."""
    code: str = Field(..., min_length=1, max_length=100, description="Stable permission code")
    name: str = Field(..., min_length=1, max_length=150, description="Display name")
    module: str = Field(..., min_length=1, max_length=50, description="Module (e.g., 'orders', 'users')")
    category: str = Field("GENERAL", max_length=50, description="Category used for grouping in editors")
    description: Optional[str] = Field(None, max_length=1000, description="Permission description")
    sort_order: int = 0


class PermissionCreate(PermissionBase):
    """Schema for creating a new permission."""

    @field_validator('code')
    @classmethod
    def code_format(cls, v: str) -> str:
        return _code(v)

    @field_validator('category')
    @classmethod
    def category_default(cls, v: str) -> str:
        return v.strip() or "GENERAL"


class PermissionUpdate(BaseModel):
    """Schema for updating a permission. Code, module and category are immutable."""
    name: Optional[str] = Field(None, min_length=1, max_length=150)
    description: Optional[str] = Field(None, max_length=1000)
    is_active: Optional[bool] = None
    sort_order: Optional[int] = None


class PermissionBulkUpsert(BaseModel):
    permissions: List[PermissionCreate] = Field(..., min_length=1)


class PermissionBulkResult(BaseModel):
    created: List[str] = []
    updated: List[str] = []
    unchanged: List[str] = []


class PermissionResponse(PermissionBase):
    """Schema for permission response."""
    is_active: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Role Schemas
# ============================================================================

class RoleBase(BaseModel):
    """Base role schema."""
    name: str = Field(..., min_length=1, max_length=100, description="Display name")
    description: Optional[str] = Field(None, max_length=1000, description="Role description")


class RoleCreate(RoleBase):
    """Schema for creating a new role. Roles created through the API are never system roles."""
    code: str = Field(..., min_length=1, max_length=64, description="Stable role code")
    sort_order: int = 0

    @field_validator('code')
    @classmethod
    def code_format(cls, v: str) -> str:
        return _code(v)


class RoleUpdate(BaseModel):
    """Schema for updating a role."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    is_active: Optional[bool] = None
    sort_order: Optional[int] = None


class RoleResponse(RoleBase):
    """Schema for role response."""
    code: str
    is_system: bool
    is_active: bool
    is_super: bool
    matrix_version: int
    sort_order: int
    user_count: int = 0

    model_config = ConfigDict(from_attributes=True)


class RoleWithPermissions(RoleResponse):
    permission_codes: List[str] = []


class RolePermissionsUpdate(BaseModel):
    """Full replacement of a role's grants."""
    permission_ids: List[str] = Field(
        ..., alias="permissionIds", description="Permission codes the role grants after the call"
    )
    expected_version: Optional[int] = Field(
        None, alias="expectedVersion", description="Reject the write if the role's matrix_version differs"
    )

    model_config = ConfigDict(populate_by_name=True)


class RolesPermissionsResponse(BaseModel):
    """Everything the matrix editor needs in one round trip."""
    roles: List[RoleResponse]
    permissions: List[PermissionResponse]
    matrix: Dict[str, List[str]]


# ============================================================================
# Group Schemas
# ============================================================================

class GroupBase(BaseModel):
    """Base group schema."""
    name: str = Field(..., min_length=1, max_length=100, description="Group name")
    description: Optional[str] = Field(None, max_length=1000, description="Group description")


class GroupCreate(GroupBase):
    """Schema for creating a new group."""
    code: str = Field(..., min_length=1, max_length=64)
    permission_codes: List[str] = Field(default_factory=list, alias="permissionCodes")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator('code')
    @classmethod
    def code_format(cls, v: str) -> str:
        return _code(v)


class GroupUpdate(BaseModel):
    """Schema for updating a group."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    sort_order: Optional[int] = None


class GroupPermissionsUpdate(BaseModel):
    permission_codes: List[str] = Field(..., alias="permissionCodes")

    model_config = ConfigDict(populate_by_name=True)


class GroupResponse(GroupBase):
    """Schema for group response."""
    id: str
    code: str
    is_system_default: bool
    is_active: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class GroupWithPermissions(GroupResponse):
    permission_codes: List[str] = []


class GroupApplyResponse(BaseModel):
    role_code: str
    permission_codes: List[str]


# ============================================================================
# Override Schemas
# ============================================================================

class OverrideItem(BaseModel):
    permission_code: str = Field(..., alias="permissionCode")
    effect: str = Field(..., description="ALLOW, DENY or INHERIT")
    reason: Optional[str] = Field(None, max_length=500)

    model_config = ConfigDict(populate_by_name=True)


class UserOverridesUpdate(BaseModel):
    """Replaces the user's entire override set; INHERIT entries are dropped."""
    overrides: List[OverrideItem]


class OverrideResponse(BaseModel):
    permission_code: str
    effect: OverrideEffect
    reason: Optional[str] = None
    assigned_by_id: Optional[str] = None
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Permission Check Schemas
# ============================================================================

class PermissionCheckRequest(BaseModel):
    """Schema for checking if the caller has a permission."""
    permission_code: str = Field(..., alias="permissionCode", description="Permission code")

    model_config = ConfigDict(populate_by_name=True)


class PermissionCheckResponse(BaseModel):
    """Schema for permission check response."""
    permission_code: str
    has_permission: bool
    reason: Optional[str] = None


# ============================================================================
# Audit Log Schemas
# ============================================================================

class AuditLogResponse(BaseModel):
    """Schema for audit log response."""
    id: str
    user_id: Optional[str]
    action: str
    resource_type: str
    resource_id: Optional[str]
    details: Optional[Dict[str, Any]]
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuditLogListResponse(BaseModel):
    """Schema for paginated audit log list."""
    items: List[AuditLogResponse]
    total: int
    page: int
    page_size: int
    pages: int
