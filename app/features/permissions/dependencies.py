"""
Permission checking dependencies and audit logging helpers.

Implements:
- FastAPI dependencies for route protection
- Audit logging helpers
"""
from typing import Dict, Any, Optional
from fastapi import Depends, HTTPException, status, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.users.dependencies import get_current_user
from app.features.users.models import User
from app.features.permissions.models import AuditLog
from app.features.permissions.resolver import has_permission
from app.features.permissions.service import resolve_for_user
from app.utils import get_logger


log = get_logger(__name__)


# ============================================================================
# FastAPI Dependencies
# ============================================================================

def require_permission(permission_code: str):
    """
    FastAPI dependency to require a specific permission.

    Usage:
        @router.put("/roles/{role_code}/permissions")
        async def set_role_permissions(
            db: AsyncSession = Depends(get_db),
            user: User = Depends(require_permission("MANAGE_PERMISSIONS"))
        ):
            # User holds MANAGE_PERMISSIONS (or the super role)
            pass

    Raises:
        HTTPException: 403 if user doesn't have permission
    """
    async def permission_dependency(
        db: AsyncSession = Depends(get_db),
        current_user: User = Depends(get_current_user)
    ) -> User:
        snapshot, actor = await resolve_for_user(db, current_user)
        if not has_permission(snapshot, actor, permission_code):
            log.info("User %s denied %s", current_user.id, permission_code)
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied: {permission_code}"
            )
        return current_user

    return permission_dependency


# ============================================================================
# Audit Logging
# ============================================================================

def record_audit(
    db: AsyncSession,
    user_id: Optional[str],
    action: str,
    resource_type: str,
    resource_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> AuditLog:
    """
    Add an audit log entry to the current transaction.

    The row commits or rolls back together with the change it describes.

    Args:
        db: Database session
        user_id: User performing the action
        action: Action performed (e.g., "create", "update", "delete", "set_permissions")
        resource_type: Type of resource (e.g., "role", "permission", "user")
        resource_id: ID or code of the resource
        details: Additional details
        request: Incoming request, for client IP address and user agent
    """
    audit_log = AuditLog(
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        details=details,
        ip_address=request.client.host if request is not None and request.client else None,
        user_agent=request.headers.get("user-agent") if request is not None else None,
    )
    db.add(audit_log)

    log.info("Audit: user=%s action=%s resource=%s:%s", user_id, action, resource_type, resource_id)
    return audit_log
