from types import SimpleNamespace

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.core.database.base import Base
from app.core.database.engine import get_db, import_models
from app.features.permissions.models import Permission, Role
from app.features.permissions.service import set_role_permissions
from app.features.users.dependencies import get_current_user
from app.features.users.models import User
from app.features.users.service import assign_roles


CATALOG = [
    ("VIEW_ADMIN_DASHBOARD", "admin", "ADMIN"),
    ("MANAGE_USERS", "admin", "ADMIN"),
    ("MANAGE_PERMISSIONS", "admin", "ADMIN"),
    ("MANAGE_SETTINGS", "settings", "ADMIN"),
    ("VIEW_REPORTS", "reports", "REPORTS"),
    ("EXPORT_REPORTS", "reports", "REPORTS"),
]


@pytest.fixture()
async def engine(tmp_path):
    import_models()
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path/'test.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture()
async def db(engine):
    session_factory = async_sessionmaker(engine, expire_on_commit=False, autoflush=False)
    async with session_factory() as session:
        yield session


@pytest.fixture()
async def policy(db):
    """
    Catalog of six permissions, roles SUPER_ADMIN / ADMIN / STAFF (system) and
    TEMP, and one user per system role.
    """
    for index, (code, module, category) in enumerate(CATALOG):
        db.add(Permission(code=code, name=code.replace("_", " ").title(), module=module, category=category, sort_order=index))
    db.add_all([
        Role(code="SUPER_ADMIN", name="Super Admin", is_system=True, sort_order=0),
        Role(code="ADMIN", name="Admin", is_system=True, sort_order=1),
        Role(code="STAFF", name="Staff", is_system=True, sort_order=2),
        Role(code="TEMP", name="Temporary", sort_order=3),
    ])
    root = User(email="root@example.com", name="Root")
    admin = User(email="admin@example.com", name="Admin")
    staff = User(email="staff@example.com", name="Staff")
    db.add_all([root, admin, staff])
    await db.flush()

    await set_role_permissions(db, "ADMIN", ["VIEW_ADMIN_DASHBOARD", "MANAGE_PERMISSIONS", "MANAGE_SETTINGS"])
    await set_role_permissions(db, "STAFF", ["VIEW_ADMIN_DASHBOARD"])
    await assign_roles(db, root.id, ["SUPER_ADMIN"])
    await assign_roles(db, admin.id, ["ADMIN"])
    await assign_roles(db, staff.id, ["STAFF"])
    await db.commit()

    return SimpleNamespace(root=root, admin=admin, staff=staff)


@pytest.fixture()
async def client(db, policy):
    """
    API client sharing the test session. Requests run as `client.user`
    (the admin by default); reassign it to act as someone else.
    """
    from app.main import app

    async def override_get_db():
        yield db

    async def override_get_current_user():
        return client.user

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        client.user = policy.admin
        yield client

    app.dependency_overrides.clear()
