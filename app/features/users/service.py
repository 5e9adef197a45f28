"""
User lookups and role assignment.
"""
from typing import Iterable
from sqlalchemy import select, delete, insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import NotFoundError, PolicyValidationError
from app.features.users.models import User, user_roles
from app.features.permissions.models import Role
from app.features.permissions.resolver import Actor
from app.utils import get_logger


log = get_logger(__name__)


async def get_user(db: AsyncSession, user_id: str) -> User:
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    return user


async def get_user_role_codes(db: AsyncSession, user_id: str) -> list[str]:
    result = await db.execute(
        select(user_roles.c.role_code)
        .where(user_roles.c.user_id == user_id)
        .order_by(user_roles.c.role_code)
    )
    return list(result.scalars().all())


async def load_actor(db: AsyncSession, user: User) -> Actor:
    """Build the resolver's view of a user."""
    role_codes = await get_user_role_codes(db, user.id)
    return Actor(user_id=user.id, role_codes=frozenset(role_codes), is_active=user.is_active)


async def assign_roles(
    db: AsyncSession,
    user_id: str,
    role_codes: Iterable[str],
    assigned_by_id: str | None = None,
) -> list[str]:
    """
    Replace the user's role assignments.

    Unknown or inactive role codes reject the whole call.
    """
    user = await get_user(db, user_id)
    wanted = sorted(set(role_codes))

    if wanted:
        result = await db.execute(
            select(Role.code).where(Role.code.in_(wanted), Role.is_active == True)  # noqa: E712
        )
        known = set(result.scalars().all())
        missing = [code for code in wanted if code not in known]
        if missing:
            raise PolicyValidationError("Unknown or inactive role codes", missing)

    await db.execute(delete(user_roles).where(user_roles.c.user_id == user.id))
    if wanted:
        await db.execute(
            insert(user_roles),
            [{"user_id": user.id, "role_code": code, "assigned_by_id": assigned_by_id} for code in wanted],
        )
    await db.flush()

    log.info("Roles of user %s set to %s", user.id, wanted)
    return wanted
