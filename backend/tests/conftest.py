# tests/conftest.py — Shared test fixtures
import os
import tempfile

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"
os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="huddle-uploads-"))
for _key in ("LLM_PROVIDER", "GROQ_API_KEY", "OPENAI_API_KEY", "ANTHROPIC_API_KEY", "LOCAL_LLM_URL"):
    os.environ.pop(_key, None)

from models import (
    Base, User, Workspace, UserWorkspace, WorkspaceRole, Channel, ChannelMember, new_uuid,
)
from auth import AuthService
from database import get_db_session
from main import app

TEST_PASSWORD = "TestPassword123!"


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


async def _make_user(db_session, email: str, name: str) -> User:
    user = User(
        id=new_uuid(),
        email=email,
        name=name,
        password_hash=AuthService.hash_password(TEST_PASSWORD),
        is_active=True,
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def test_user(db_session):
    """Workspace owner"""
    return await _make_user(db_session, "testuser@huddle.dev", "Test User")


@pytest_asyncio.fixture
async def member_user(db_session):
    return await _make_user(db_session, "member@huddle.dev", "Member User")


@pytest_asyncio.fixture
async def guest_user(db_session):
    return await _make_user(db_session, "guest@huddle.dev", "Guest User")


@pytest_asyncio.fixture
async def outsider(db_session):
    """A user with no membership in the test workspace"""
    return await _make_user(db_session, "outsider@huddle.dev", "Outsider")


@pytest_asyncio.fixture
async def test_workspace(db_session, test_user, member_user, guest_user):
    """Workspace owned by test_user with a member, a guest and a #general channel"""
    workspace = Workspace(
        id=new_uuid(),
        name="Test Workspace",
        slug="test-workspace",
        owner_id=test_user.id,
        settings={},
    )
    general = Channel(
        id=new_uuid(),
        workspace_id=workspace.id,
        name="general",
        display_name="General",
        is_private=False,
        created_by=test_user.id,
    )
    db_session.add_all([
        workspace,
        UserWorkspace(user_id=test_user.id, workspace_id=workspace.id, role=WorkspaceRole.OWNER),
        UserWorkspace(user_id=member_user.id, workspace_id=workspace.id, role=WorkspaceRole.MEMBER),
        UserWorkspace(user_id=guest_user.id, workspace_id=workspace.id, role=WorkspaceRole.GUEST),
        general,
        ChannelMember(channel_id=general.id, user_id=test_user.id),
        ChannelMember(channel_id=general.id, user_id=member_user.id),
    ])
    await db_session.commit()
    await db_session.refresh(workspace)
    return workspace


@pytest_asyncio.fixture
async def general_channel(db_session, test_workspace):
    result = await db_session.execute(
        select(Channel).where(Channel.workspace_id == test_workspace.id, Channel.name == "general")
    )
    return result.scalar_one()


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    token = AuthService.create_access_token({"sub": user.id, "email": user.email})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers(test_user):
    return get_auth_headers(test_user)
