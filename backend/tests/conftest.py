# tests/conftest.py — Shared test fixtures
import os
import uuid

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"
os.environ.setdefault("APP_URL", "http://pms.test")

from models import Base, User, Workspace, Member, MemberRole, Project
import auth
from auth import AuthService
from database import get_db_session
from main import app

TEST_PASSWORD = "TestPassword123!"
_PASSWORD_HASH = AuthService.hash_password(TEST_PASSWORD)


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(db_engine):
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(db_engine):
    """HTTP test client with overridden DB dependency"""
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def reset_login_attempts():
    auth._login_attempts.clear()
    yield
    auth._login_attempts.clear()


async def create_user(db_session, name: str, email: str, **extra) -> User:
    user = User(
        id=str(uuid.uuid4()),
        name=name,
        email=email,
        password_hash=_PASSWORD_HASH,
        is_active=True,
        **extra,
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


async def add_member(db_session, user: User, workspace: Workspace, role: MemberRole, project_id: str = None) -> Member:
    member = Member(user_id=user.id, workspace_id=workspace.id, role=role, project_id=project_id)
    db_session.add(member)
    await db_session.commit()
    await db_session.refresh(member)
    return member


@pytest_asyncio.fixture
async def admin_user(db_session):
    """Workspace owner; becomes ADMIN through the workspace fixture"""
    return await create_user(db_session, "Admin User", "admin@pms.dev", department="Management")


@pytest_asyncio.fixture
async def workspace(db_session, admin_user):
    ws = Workspace(name="Test Workspace", invite_code="JOINME1234", user_id=admin_user.id)
    db_session.add(ws)
    await db_session.commit()
    await db_session.refresh(ws)
    await add_member(db_session, admin_user, ws, MemberRole.ADMIN)
    return ws


@pytest_asyncio.fixture
async def manager_user(db_session, workspace):
    user = await create_user(db_session, "Manager User", "manager@pms.dev", department="Delivery")
    await add_member(db_session, user, workspace, MemberRole.PROJECT_MANAGER)
    return user


@pytest_asyncio.fixture
async def employee_user(db_session, workspace):
    user = await create_user(db_session, "Employee User", "employee@pms.dev", department="Engineering")
    await add_member(db_session, user, workspace, MemberRole.EMPLOYEE)
    return user


@pytest_asyncio.fixture
async def project(db_session, workspace):
    p = Project(name="Customer Portal", workspace_id=workspace.id, assignees=[])
    db_session.add(p)
    await db_session.commit()
    await db_session.refresh(p)
    return p


@pytest_asyncio.fixture
async def client_user(db_session, workspace, project):
    user = await create_user(db_session, "Client User", "client@customer.com")
    await add_member(db_session, user, workspace, MemberRole.CLIENT, project_id=project.id)
    return user


@pytest_asyncio.fixture
async def outsider_user(db_session):
    """User with no workspace membership"""
    return await create_user(db_session, "Outsider User", "outsider@pms.dev")


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    token = AuthService.create_access_token({"sub": user.id, "email": user.email})
    return {"Authorization": f"Bearer {token}"}
