"""
Permission catalog, roles, role grants, permission groups and user overrides.

This module holds the policy data the resolver consumes:
- Permission catalog (codes grouped by module and category)
- Roles and the role -> permission matrix (RoleGrant)
- Permission groups, an authoring bundle expanded into grants on assignment
- Per-user overrides (ALLOW / DENY; INHERIT is never stored)
- Audit log of policy changes
"""
import enum
from typing import Any, Dict
from sqlalchemy import String, ForeignKey, JSON, Text, Boolean, Integer, Enum, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.core import config
from app.core.database.base import Base, TimestampMixin, generate_ulid


class OverrideEffect(str, enum.Enum):
    ALLOW = "ALLOW"
    DENY = "DENY"
    INHERIT = "INHERIT"


# ============================================================================
# Catalog & Matrix
# ============================================================================

class Permission(Base, TimestampMixin):
    """
    Permission catalog entry.

    `code` is the immutable identity; module and category are classification
    metadata only. Inactive permissions are never granted.
    """
    __tablename__ = "permissions"

    code: Mapped[str] = mapped_column(String(100), primary_key=True)
    name: Mapped[str] = mapped_column(String(150), nullable=False)
    module: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    category: Mapped[str] = mapped_column(String(50), nullable=False, default="GENERAL", index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    def __repr__(self) -> str:
        return f"<Permission(code={self.code!r}, module={self.module}, category={self.category})>"


class Role(Base, TimestampMixin):
    """
    Role owning a row of the permission matrix.

    System roles are seeded and cannot be deleted. The one system role whose
    code equals SUPER_ROLE_CODE bypasses every check.
    """
    __tablename__ = "roles"

    code: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_system: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Bumped on every matrix write; lets editors opt into optimistic concurrency
    matrix_version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    @property
    def is_super(self) -> bool:
        return self.is_system and self.code == config.SUPER_ROLE_CODE

    def __repr__(self) -> str:
        return f"<Role(code={self.code!r}, system={self.is_system})>"


class RoleGrant(Base):
    """One cell of the matrix: the role grants the permission."""
    __tablename__ = "role_grants"

    role_code: Mapped[str] = mapped_column(
        String(64), ForeignKey("roles.code", ondelete="CASCADE"), primary_key=True
    )
    permission_code: Mapped[str] = mapped_column(
        String(100), ForeignKey("permissions.code", ondelete="CASCADE"), primary_key=True
    )


# ============================================================================
# Permission Groups
# ============================================================================

class PermissionGroup(Base, TimestampMixin):
    """
    Named bundle of catalog permissions.

    Groups are never consulted during resolution; applying one to a role
    copies its members into that role's grants.
    """
    __tablename__ = "permission_groups"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_system_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    def __repr__(self) -> str:
        return f"<PermissionGroup(id={self.id}, code={self.code!r})>"


class PermissionGroupMember(Base):
    __tablename__ = "permission_group_members"

    group_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("permission_groups.id", ondelete="CASCADE"), primary_key=True
    )
    permission_code: Mapped[str] = mapped_column(
        String(100), ForeignKey("permissions.code", ondelete="CASCADE"), primary_key=True
    )


# ============================================================================
# User Overrides
# ============================================================================

class UserOverride(Base, TimestampMixin):
    """
    Per-user exception to role-derived grants.

    At most one row per (user, permission). Only ALLOW and DENY are stored;
    INHERIT is expressed by the absence of a row.
    """
    __tablename__ = "user_permission_overrides"
    __table_args__ = (
        UniqueConstraint("user_id", "permission_code", name="uq_user_override"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    user_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    permission_code: Mapped[str] = mapped_column(
        String(100), ForeignKey("permissions.code", ondelete="CASCADE"), nullable=False
    )
    effect: Mapped[OverrideEffect] = mapped_column(
        Enum(OverrideEffect, native_enum=False, length=10), nullable=False
    )
    reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    assigned_by_id: Mapped[str | None] = mapped_column(String(26), nullable=True)

    def __repr__(self) -> str:
        return f"<UserOverride(user_id={self.user_id}, code={self.permission_code!r}, effect={self.effect})>"


# ============================================================================
# Audit
# ============================================================================

class AuditLog(Base, TimestampMixin):
    """
    Audit log for tracking policy changes.

    Tracks who did what, when, and from where.
    """
    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Actor
    user_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)

    # Action details
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)

    details: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, user_id={self.user_id}, action={self.action}, resource={self.resource_type})>"
