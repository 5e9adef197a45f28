"""
Store operations for feature flags, owner access overrides and customer
visibility rules.

Writes validate the whole batch first and only flush; the request
transaction commits.
"""
from typing import Any, Iterable, Optional
from sqlalchemy import select, delete, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import NotFoundError, PolicyValidationError, ProtectedEntityError
from app.features.feature_flags.models import (
    CustomerFeatureVisibility,
    FeatureAccessOverride,
    FeatureFlag,
    OwnerType,
    Visibility,
)
from app.features.feature_flags.resolver import (
    FeatureSnapshot,
    VisibilityRule,
    is_feature_enabled,
    resolve_visibility,
)
from app.utils import get_logger


log = get_logger(__name__)

# Features reported by the customer portal snapshot when the caller names none
PORTAL_FEATURES = ("TRADER_TOOLS", "INTERNATIONAL_PURCHASES", "AI_TOOLS", "CUSTOMER_SERVICES")


def parse_owner_type(value: Any) -> OwnerType:
    if isinstance(value, OwnerType):
        return value
    try:
        return OwnerType(str(value).strip().upper())
    except ValueError:
        raise PolicyValidationError(f"Invalid owner type {value!r}", [str(value)])


def parse_visibility(value: Any) -> Visibility:
    if isinstance(value, Visibility):
        return value
    try:
        return Visibility(str(value).strip().upper())
    except ValueError:
        raise PolicyValidationError(f"Invalid visibility {value!r}", [str(value)])


# ============================================================================
# Flags
# ============================================================================

async def list_flags(db: AsyncSession) -> list[FeatureFlag]:
    result = await db.execute(select(FeatureFlag).order_by(FeatureFlag.key))
    return list(result.scalars().all())


async def get_flag(db: AsyncSession, key: str) -> FeatureFlag:
    result = await db.execute(select(FeatureFlag).where(FeatureFlag.key == key))
    flag = result.scalar_one_or_none()
    if flag is None:
        raise NotFoundError(f"Feature {key} not found", [key])
    return flag


async def set_flag(
    db: AsyncSession,
    key: str,
    is_enabled: bool,
    name: Optional[str] = None,
    description: Optional[str] = None,
) -> FeatureFlag:
    """Create or update the global flag for key."""
    result = await db.execute(select(FeatureFlag).where(FeatureFlag.key == key))
    flag = result.scalar_one_or_none()
    if flag is None:
        flag = FeatureFlag(key=key)
        db.add(flag)
    flag.is_enabled = is_enabled
    if name is not None:
        flag.name = name
    if description is not None:
        flag.description = description
    await db.flush()
    log.info("Feature %s globally %s", key, "enabled" if is_enabled else "disabled")
    return flag


async def delete_flag(db: AsyncSession, key: str) -> None:
    flag = await get_flag(db, key)
    result = await db.execute(
        select(func.count()).select_from(FeatureAccessOverride).where(FeatureAccessOverride.feature_key == key)
    )
    if result.scalar():
        raise ProtectedEntityError(f"Feature {key} still has owner overrides", [key])
    await db.delete(flag)
    await db.flush()
    log.info("Deleted feature %s", key)


# ============================================================================
# Owner access overrides
# ============================================================================

async def load_feature_snapshot(
    db: AsyncSession,
    owner_type: Optional[OwnerType] = None,
    owner_id: Optional[str] = None,
) -> FeatureSnapshot:
    """Flags plus overrides, limited to one owner when given."""
    result = await db.execute(select(FeatureFlag.key, FeatureFlag.is_enabled))
    flags = {key: enabled for key, enabled in result.all()}

    stmt = select(
        FeatureAccessOverride.owner_type,
        FeatureAccessOverride.owner_id,
        FeatureAccessOverride.feature_key,
        FeatureAccessOverride.is_enabled,
    )
    if owner_type is not None and owner_id is not None:
        stmt = stmt.where(
            FeatureAccessOverride.owner_type == owner_type,
            FeatureAccessOverride.owner_id == owner_id,
        )
    overrides: dict[tuple[OwnerType, str], dict[str, bool]] = {}
    result = await db.execute(stmt)
    for row_owner_type, row_owner_id, key, enabled in result.all():
        overrides.setdefault((OwnerType(row_owner_type), row_owner_id), {})[key] = enabled

    return FeatureSnapshot(flags=flags, overrides=overrides)


async def check_feature(db: AsyncSession, owner_type: Any, owner_id: str, feature_key: str) -> bool:
    owner_type = parse_owner_type(owner_type)
    snapshot = await load_feature_snapshot(db, owner_type, owner_id)
    return is_feature_enabled(snapshot, owner_type, owner_id, feature_key)


async def list_owner_feature_access(db: AsyncSession, owner_type: Any, owner_id: str) -> list[dict[str, Any]]:
    """Every flag with its global value, the owner's effective value and whether an override applies."""
    owner_type = parse_owner_type(owner_type)
    snapshot = await load_feature_snapshot(db, owner_type, owner_id)
    owner_overrides = snapshot.overrides.get((owner_type, owner_id), {})
    return [
        {
            "feature_code": flag.key,
            "name": flag.name,
            "global_enabled": flag.is_enabled,
            "is_enabled": is_feature_enabled(snapshot, owner_type, owner_id, flag.key),
            "overridden": flag.key in owner_overrides,
        }
        for flag in await list_flags(db)
    ]


async def set_owner_feature_access(
    db: AsyncSession,
    owner_type: Any,
    owner_id: str,
    items: Iterable[dict[str, Any]],
    assigned_by_id: Optional[str] = None,
) -> list[dict[str, Any]]:
    """
    Bulk upsert of one owner's overrides.

    Items are {feature_code, is_enabled}; is_enabled None removes the
    override so the owner falls back to the global flag. Unknown feature
    codes reject the whole batch.
    """
    owner_type = parse_owner_type(owner_type)
    wanted: dict[str, Optional[bool]] = {}
    for item in items:
        wanted[item["feature_code"]] = item.get("is_enabled")

    if wanted:
        result = await db.execute(select(FeatureFlag.key).where(FeatureFlag.key.in_(list(wanted))))
        missing = set(wanted) - set(result.scalars().all())
        if missing:
            raise PolicyValidationError("Unknown feature codes", missing)

    result = await db.execute(
        select(FeatureAccessOverride).where(
            FeatureAccessOverride.owner_type == owner_type,
            FeatureAccessOverride.owner_id == owner_id,
            FeatureAccessOverride.feature_key.in_(list(wanted)),
        )
    )
    existing = {row.feature_key: row for row in result.scalars().all()}

    for key, enabled in wanted.items():
        row = existing.get(key)
        if enabled is None:
            if row is not None:
                await db.delete(row)
            continue
        if row is None:
            row = FeatureAccessOverride(owner_type=owner_type, owner_id=owner_id, feature_key=key)
            db.add(row)
        row.is_enabled = enabled
        row.assigned_by_id = assigned_by_id
    await db.flush()

    log.info("Feature access of %s %s updated for %s", owner_type.value, owner_id, sorted(wanted))
    return await list_owner_feature_access(db, owner_type, owner_id)


# ============================================================================
# Customer visibility
# ============================================================================

async def list_customer_visibility(db: AsyncSession, customer_id: str) -> list[CustomerFeatureVisibility]:
    result = await db.execute(
        select(CustomerFeatureVisibility)
        .where(CustomerFeatureVisibility.customer_id == customer_id)
        .order_by(CustomerFeatureVisibility.feature_code)
    )
    return list(result.scalars().all())


async def _get_visibility_row(db: AsyncSession, customer_id: str, feature_code: str) -> Optional[CustomerFeatureVisibility]:
    result = await db.execute(
        select(CustomerFeatureVisibility).where(
            CustomerFeatureVisibility.customer_id == customer_id,
            CustomerFeatureVisibility.feature_code == feature_code,
        )
    )
    return result.scalar_one_or_none()


async def set_customer_visibility(
    db: AsyncSession,
    customer_id: str,
    feature_code: str,
    visibility: Any,
    condition_profile_percent: Optional[int] = None,
    reason: Optional[str] = None,
    assigned_by_id: Optional[str] = None,
) -> CustomerFeatureVisibility:
    """Upsert the customer's rule for feature_code."""
    visibility = parse_visibility(visibility)
    if condition_profile_percent is not None and not 0 <= condition_profile_percent <= 100:
        raise PolicyValidationError("Profile percent threshold must be between 0 and 100", [feature_code])

    row = await _get_visibility_row(db, customer_id, feature_code)
    if row is None:
        row = CustomerFeatureVisibility(customer_id=customer_id, feature_code=feature_code)
        db.add(row)
    row.visibility = visibility
    row.condition_profile_percent = condition_profile_percent
    row.reason = reason
    row.assigned_by_id = assigned_by_id
    await db.flush()

    log.info("Visibility of %s for customer %s set to %s", feature_code, customer_id, visibility.value)
    return row


async def remove_customer_visibility(db: AsyncSession, customer_id: str, feature_code: str) -> None:
    row = await _get_visibility_row(db, customer_id, feature_code)
    if row is None:
        raise NotFoundError(f"No visibility rule for {feature_code}", [feature_code])
    await db.delete(row)
    await db.flush()


async def check_visibility(db: AsyncSession, customer_id: str, feature_code: str, profile_percent: float) -> Visibility:
    row = await _get_visibility_row(db, customer_id, feature_code)
    rule = None if row is None else VisibilityRule(row.visibility, row.condition_profile_percent)
    return resolve_visibility(rule, profile_percent)


async def feature_snapshot(
    db: AsyncSession,
    customer_id: str,
    profile_percent: float,
    feature_codes: Optional[Iterable[str]] = None,
) -> list[dict[str, Any]]:
    """Per-feature visibility report for a customer portal."""
    codes = list(feature_codes) if feature_codes else list(PORTAL_FEATURES)
    rows = {row.feature_code: row for row in await list_customer_visibility(db, customer_id)}

    report = []
    for code in codes:
        row = rows.get(code)
        rule = None if row is None else VisibilityRule(row.visibility, row.condition_profile_percent)
        report.append({
            "feature_code": code,
            "visibility": rule.visibility if rule else Visibility.SHOW,
            "required_profile_percent": rule.condition_profile_percent if rule else None,
            "allowed": resolve_visibility(rule, profile_percent) == Visibility.SHOW,
        })
    return report
