"""
Seed script to populate the default policy.

Run this script after database initialization to create:
- Default permission catalog
- Default system roles and their initial grants
- System default permission groups
- Default feature flags
- Optionally, a super admin user (SEED_ADMIN_EMAIL)

Existing rows are left alone, so the script is safe to re-run after
administrators have edited the policy.

Usage:
    python -m scripts.seed_permissions
"""
import asyncio
import os
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.core.database.engine import AsyncSessionLocal, init_db
from app.features.feature_flags.models import FeatureFlag
from app.features.permissions import service as permission_service
from app.features.permissions.models import PermissionGroup, Role
from app.features.users.auth import create_access_token
from app.features.users.models import User
from app.features.users.service import assign_roles
from app.utils import get_logger


log = get_logger(__name__)


# (code, module, category, name)
DEFAULT_PERMISSIONS = [
    # Admin
    ("VIEW_ADMIN_DASHBOARD", "admin", "ADMIN", "View Admin Dashboard"),
    ("MANAGE_USERS", "admin", "ADMIN", "Manage Users"),
    ("MANAGE_PERMISSIONS", "admin", "ADMIN", "Manage Permissions"),
    ("MANAGE_SETTINGS", "settings", "ADMIN", "Manage Settings"),
    ("VIEW_CUSTOMERS", "customers", "ADMIN", "View Customers"),
    ("MANAGE_CUSTOMERS", "customers", "ADMIN", "Manage Customers"),
    ("VIEW_SUPPLIERS", "suppliers", "ADMIN", "View Suppliers"),
    ("MANAGE_SUPPLIERS", "suppliers", "ADMIN", "Manage Suppliers"),
    ("MANAGE_INTERNATIONAL_SUPPLIERS", "suppliers", "ADMIN", "Manage International Suppliers"),
    ("VIEW_TRADER_TOOLS_ADMIN", "admin", "ADMIN", "View Trader Tools Admin"),

    # Customer portal
    ("VIEW_CUSTOMER_PORTAL", "customer_portal", "CUSTOMER_PORTAL", "View Customer Portal"),
    ("VIEW_TRADER_TOOLS", "tools", "CUSTOMER_PORTAL", "View Trader Tools"),
    ("USE_TRADER_TOOLS", "tools", "CUSTOMER_PORTAL", "Use Trader Tools"),
    ("VIEW_INTERNATIONAL_PURCHASES", "international", "CUSTOMER_PORTAL", "View International Purchases"),
    ("MANAGE_INTERNATIONAL_PURCHASES", "international", "CUSTOMER_PORTAL", "Manage International Purchases"),
    ("USE_AI_ASSISTANT", "ai", "CUSTOMER_PORTAL", "Use AI Assistant"),

    # Pages
    ("VIEW_PAGE_TRADER_TOOLS", "pages", "PAGES", "View Trader Tools Page"),
    ("VIEW_PAGE_CUSTOMER_SERVICES", "pages", "PAGES", "View Customer Services Page"),
    ("VIEW_PAGE_INTERNATIONAL_PURCHASES", "pages", "PAGES", "View International Purchases Page"),

    # Supplier portal
    ("VIEW_SUPPLIER_PORTAL", "supplier_portal", "SUPPLIER_PORTAL", "View Supplier Portal"),
    ("VIEW_SUPPLIER_DASHBOARD", "supplier_portal", "SUPPLIER_PORTAL", "View Supplier Dashboard"),
    ("MANAGE_SUPPLIER_PRODUCTS", "supplier_portal", "SUPPLIER_PORTAL", "Manage Supplier Products"),
    ("VIEW_SUPPLIER_REQUESTS", "supplier_portal", "SUPPLIER_PORTAL", "View Supplier Requests"),
    ("RESPOND_TO_REQUESTS", "supplier_portal", "SUPPLIER_PORTAL", "Respond to Requests"),
    ("MANAGE_SUPPLIER_EMPLOYEES", "supplier_portal", "SUPPLIER_PORTAL", "Manage Supplier Employees"),
    ("VIEW_SUPPLIER_REPORTS", "supplier_portal", "SUPPLIER_PORTAL", "View Supplier Reports"),
    ("EXPORT_SUPPLIER_REPORTS", "supplier_portal", "SUPPLIER_PORTAL", "Export Supplier Reports"),

    # Reports
    ("VIEW_REPORTS", "reports", "REPORTS", "View Reports"),
    ("EXPORT_REPORTS", "reports", "REPORTS", "Export Reports"),

    # Tools
    ("VIEW_FEEDBACK_CENTER", "feedback", "TOOLS", "View Feedback Center"),
    ("MANAGE_FEEDBACK", "feedback", "TOOLS", "Manage Feedback"),
    ("VIEW_SEO_TOOLS", "seo", "TOOLS", "View SEO Tools"),
    ("MANAGE_SEO_SETTINGS", "seo", "TOOLS", "Manage SEO Settings"),
    ("MANAGE_MESSAGE_TEMPLATES", "messages", "TOOLS", "Manage Message Templates"),
    ("CONFIGURE_AI_BEHAVIOR", "ai", "TOOLS", "Configure AI Behavior"),

    # Account
    ("TOGGLE_DARK_MODE_FOR_ACCOUNT", "account", "ACCOUNT", "Toggle Dark Mode"),
]

ADMIN_PERMISSIONS = [
    "VIEW_ADMIN_DASHBOARD", "MANAGE_USERS", "MANAGE_PERMISSIONS", "MANAGE_SETTINGS",
    "VIEW_CUSTOMERS", "MANAGE_CUSTOMERS", "VIEW_SUPPLIERS", "MANAGE_SUPPLIERS",
    "MANAGE_INTERNATIONAL_SUPPLIERS", "VIEW_TRADER_TOOLS_ADMIN",
    "VIEW_REPORTS", "EXPORT_REPORTS",
    "VIEW_FEEDBACK_CENTER", "MANAGE_FEEDBACK", "VIEW_SEO_TOOLS", "MANAGE_SEO_SETTINGS",
    "MANAGE_MESSAGE_TEMPLATES", "CONFIGURE_AI_BEHAVIOR",
]
SUPPORT_PERMISSIONS = ["VIEW_ADMIN_DASHBOARD", "VIEW_CUSTOMERS", "VIEW_SUPPLIERS", "VIEW_REPORTS", "VIEW_FEEDBACK_CENTER"]
BASIC_CUSTOMER_PERMISSIONS = ["VIEW_CUSTOMER_PORTAL", "VIEW_PAGE_CUSTOMER_SERVICES", "TOGGLE_DARK_MODE_FOR_ACCOUNT"]
VIP_CUSTOMER_PERMISSIONS = BASIC_CUSTOMER_PERMISSIONS + [
    "VIEW_TRADER_TOOLS", "USE_TRADER_TOOLS", "VIEW_PAGE_TRADER_TOOLS",
    "VIEW_INTERNATIONAL_PURCHASES", "MANAGE_INTERNATIONAL_PURCHASES", "VIEW_PAGE_INTERNATIONAL_PURCHASES",
    "USE_AI_ASSISTANT",
]
BASIC_SUPPLIER_PERMISSIONS = ["VIEW_SUPPLIER_PORTAL", "VIEW_SUPPLIER_DASHBOARD", "VIEW_SUPPLIER_REQUESTS", "RESPOND_TO_REQUESTS"]
POWER_SUPPLIER_PERMISSIONS = BASIC_SUPPLIER_PERMISSIONS + [
    "MANAGE_SUPPLIER_PRODUCTS", "MANAGE_SUPPLIER_EMPLOYEES", "VIEW_SUPPLIER_REPORTS", "EXPORT_SUPPLIER_REPORTS",
]


# code -> (name, description, initial grants). The super role needs no grants.
DEFAULT_ROLES = {
    "SUPER_ADMIN": ("Super Admin", "Full system access", []),
    "ADMIN": ("Admin", "Administrative access", ADMIN_PERMISSIONS),
    "STAFF": ("Staff", "Staff member", SUPPORT_PERMISSIONS),
    "CUSTOMER": ("Customer", "B2B customer account", BASIC_CUSTOMER_PERMISSIONS),
    "CUSTOMER_EMPLOYEE": ("Customer Employee", "Employee of a customer", ["VIEW_CUSTOMER_PORTAL"]),
    "SUPPLIER": ("Supplier", "Supplier account", BASIC_SUPPLIER_PERMISSIONS),
    "SUPPLIER_EMPLOYEE": ("Supplier Employee", "Employee of a supplier", ["VIEW_SUPPLIER_PORTAL"]),
    "MARKETER": ("Marketer", "Affiliate marketer", ["VIEW_REPORTS"]),
    "ADVERTISER": ("Advertiser", "Advertising account", ["VIEW_REPORTS"]),
}


# code -> (name, description, members)
DEFAULT_GROUPS = {
    "DEFAULT_ADMIN": ("Default Admin", "Full administrative access", ADMIN_PERMISSIONS),
    "SUPPORT_STAFF": ("Support Staff", "Customer support permissions", SUPPORT_PERMISSIONS),
    "BASIC_CUSTOMER": ("Basic Customer", "Basic customer portal access", BASIC_CUSTOMER_PERMISSIONS),
    "VIP_CUSTOMER": ("VIP Customer", "Full customer features including trader tools", VIP_CUSTOMER_PERMISSIONS),
    "POWER_SUPPLIER": ("Power Supplier", "Full supplier portal access", POWER_SUPPLIER_PERMISSIONS),
    "BASIC_SUPPLIER": ("Basic Supplier", "Limited supplier access", BASIC_SUPPLIER_PERMISSIONS),
}


# key -> (name, enabled)
DEFAULT_FEATURE_FLAGS = {
    "feature.ai_translation": ("AI Translation", True),
    "feature.supplier_marketplace": ("Supplier Marketplace", True),
    "feature.installments": ("Installment System", True),
    "feature.trader_tools": ("Trader Tools", True),
    "feature.product_images": ("Product Images", True),
    "feature.price_comparison": ("Price Comparison", True),
}


async def seed_permissions(db: AsyncSession) -> None:
    log.info("Creating default permissions...")
    items = [
        {"code": code, "module": module, "category": category, "name": name, "sort_order": index}
        for index, (code, module, category, name) in enumerate(DEFAULT_PERMISSIONS)
    ]
    outcome = await permission_service.upsert_permissions(db, items)
    log.info("Permissions: %d created, %d updated", len(outcome.created), len(outcome.updated))


async def seed_roles(db: AsyncSession) -> None:
    """Create missing system roles and give new ones their initial grants."""
    log.info("Creating default roles...")
    for sort_order, (code, (name, description, grants)) in enumerate(DEFAULT_ROLES.items()):
        if await db.get(Role, code) is not None:
            log.debug("Role '%s' already exists, skipping", code)
            continue

        await permission_service.create_role(db, {
            "code": code,
            "name": name,
            "description": description,
            "is_system": True,
            "sort_order": sort_order,
        })
        if grants and code != config.SUPER_ROLE_CODE:
            await permission_service.set_role_permissions(db, code, grants)
        log.info("Created role '%s' with %d permissions", code, len(grants))


async def seed_groups(db: AsyncSession) -> None:
    log.info("Creating default permission groups...")
    for sort_order, (code, (name, description, members)) in enumerate(DEFAULT_GROUPS.items()):
        result = await db.execute(select(PermissionGroup.id).where(PermissionGroup.code == code))
        if result.first() is not None:
            continue
        group = await permission_service.create_group(
            db, code, name, members, description=description, is_system_default=True
        )
        group.sort_order = sort_order
    await db.flush()


async def seed_feature_flags(db: AsyncSession) -> None:
    log.info("Creating default feature flags...")
    for key, (name, enabled) in DEFAULT_FEATURE_FLAGS.items():
        result = await db.execute(select(FeatureFlag.id).where(FeatureFlag.key == key))
        if result.first() is None:
            db.add(FeatureFlag(key=key, name=name, is_enabled=enabled))
    await db.flush()


async def seed_admin_user(db: AsyncSession, email: str) -> User:
    """Create (or reuse) a user holding the super role."""
    result = await db.execute(select(User).where(User.email == email))
    user = result.scalar_one_or_none()
    if user is None:
        user = User(email=email, name="Administrator")
        db.add(user)
        await db.flush()
    await assign_roles(db, user.id, [config.SUPER_ROLE_CODE])
    return user


async def seed(db: AsyncSession) -> None:
    await seed_permissions(db)
    await seed_roles(db)
    await seed_groups(db)
    await seed_feature_flags(db)


async def main():
    """Main function to seed the default policy."""
    log.info("Starting permission seeding...")

    # Initialize database tables first
    log.info("Initializing database tables...")
    await init_db()

    async with AsyncSessionLocal() as db:
        try:
            await seed(db)

            admin_email = os.environ.get("SEED_ADMIN_EMAIL")
            if admin_email:
                admin = await seed_admin_user(db, admin_email)
                log.info("Super admin %s (%s), token: %s", admin.email, admin.id, create_access_token(admin.id))

            await db.commit()
            log.info("Permission seeding completed successfully!")

        except Exception as e:
            log.error("Error seeding permissions: %s", e, exc_info=True)
            await db.rollback()
            raise


if __name__ == "__main__":
    asyncio.run(main())
