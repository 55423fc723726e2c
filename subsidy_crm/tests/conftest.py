"""
Test fixtures - in-memory SQLite database + authenticated HTTP clients
"""
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from subsidy_crm.config import get_settings
from subsidy_crm.database import Base, get_db
from subsidy_crm.main import app
from subsidy_crm.api.auth import get_password_hash, create_access_token
from subsidy_crm.models.user import User, UserRole, AppModule


@pytest_asyncio.fixture()
async def db_session():
    """Create a fresh in-memory SQLite database for each test"""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with session_factory() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture()
async def seed_data(db_session):
    """Insert baseline test data: one admin + one consultant with limited modules"""
    admin = User(
        name="Admin User",
        email="admin@test.com",
        hashed_password=get_password_hash("adminpass123"),
        role=UserRole.ADMIN,
        module_access=[m.value for m in AppModule],
        is_active=True,
    )
    consultant = User(
        name="Consultant",
        email="consultant@test.com",
        hashed_password=get_password_hash("userpass123"),
        role=UserRole.USER,
        module_access=[AppModule.DASHBOARD.value, AppModule.LEADS.value, AppModule.PROJECTS.value],
        is_active=True,
    )

    db_session.add_all([admin, consultant])
    await db_session.commit()
    await db_session.refresh(admin)
    await db_session.refresh(consultant)

    return {"admin": admin, "user": consultant}


@pytest_asyncio.fixture()
async def upload_dir(tmp_path, monkeypatch):
    """Point task attachment storage at a temporary directory"""
    monkeypatch.setattr(get_settings(), "UPLOAD_DIR", str(tmp_path))
    return tmp_path


def _override_db(db_session):
    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db


async def _client_for(user=None):
    transport = ASGITransport(app=app)
    ac = AsyncClient(transport=transport, base_url="http://test", follow_redirects=True)
    if user is not None:
        token = create_access_token(data={"sub": str(user.id)})
        ac.headers["Authorization"] = f"Bearer {token}"
    return ac


@pytest_asyncio.fixture()
async def client(db_session, seed_data):
    """httpx AsyncClient authenticated as the admin"""
    _override_db(db_session)
    async with await _client_for(seed_data["admin"]) as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest_asyncio.fixture()
async def user_client(db_session, seed_data):
    """httpx AsyncClient authenticated as the non-admin consultant"""
    _override_db(db_session)
    async with await _client_for(seed_data["user"]) as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest_asyncio.fixture()
async def unauth_client(db_session):
    """Unauthenticated httpx AsyncClient"""
    _override_db(db_session)
    async with await _client_for() as ac:
        yield ac
    app.dependency_overrides.clear()
