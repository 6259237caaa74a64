"""Test fixtures for the Security Manager backend.

Each test gets its own SQLite file database (so concurrent sessions really
contend for it), overrides the async engine and session factory, and talks
to the FastAPI app through an httpx AsyncClient.
"""

import os
import uuid as _uuid
from collections.abc import AsyncGenerator
from typing import Any, Optional

import jwt
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

# Monkey-patch the dialect adapters before any model metadata is compiled
import sqlalchemy.dialects.sqlite.base as sqlite_dialect  # noqa: E402

# Add JSONB and UUID support to SQLite type compiler
sqlite_dialect.SQLiteTypeCompiler.visit_JSONB = lambda self, type_, **kw: "JSON"
sqlite_dialect.SQLiteTypeCompiler.visit_UUID = lambda self, type_, **kw: "CHAR(36)"

# Ensure tests use SQLite instead of a real PostgreSQL instance
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("DEBUG", "true")
os.environ["CLERK_JWKS_URL"] = ""
os.environ["CLERK_PUBLISHABLE_KEY"] = ""

from security_manager.config import get_settings  # noqa: E402
from security_manager.db import engine as db_engine  # noqa: E402
from security_manager.db.models import (  # noqa: E402
    ApiKey,
    Base,
    Organization,
    PlanTier,
    User,
)
from security_manager.main import create_app  # noqa: E402
from security_manager.services.credentials import CredentialIssuer, generate_key_value  # noqa: E402

TEST_JWT_SECRET = "security-manager-test-signing-secret"


def bearer(subject: str, name: Optional[str] = None, email: Optional[str] = None) -> dict[str, str]:
    """Authorization header carrying a Clerk-shaped session token."""
    claims: dict[str, Any] = {"sub": subject}
    if name:
        claims["name"] = name
    if email:
        claims["email"] = email
    token = jwt.encode(claims, TEST_JWT_SECRET, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


def api_key_header(raw_key: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {raw_key}"}


@pytest.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Per-test async SQLite file engine with all tables created."""
    test_engine = db_engine.build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine."""
    return db_engine.build_session_factory(engine)


@pytest.fixture(autouse=True)
def override_db_engine(engine: AsyncEngine, session_factory: async_sessionmaker[AsyncSession]):
    """Override global engine and async_session_factory used by app code."""
    original = (db_engine.engine, db_engine.async_session_factory)
    db_engine.engine = engine
    db_engine.async_session_factory = session_factory
    yield
    db_engine.engine, db_engine.async_session_factory = original


@pytest.fixture
def issuer() -> CredentialIssuer:
    return CredentialIssuer(get_settings().installer_config())


@pytest.fixture
async def app() -> Any:
    """FastAPI application instance for tests."""
    app = create_app()
    # Disable Redis for tests; the rate limit middleware lets requests through.
    app.state.redis = None
    return app


@pytest.fixture
async def client(app: Any) -> AsyncGenerator[AsyncClient, None]:
    """HTTPX AsyncClient bound to the FastAPI app."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as ac:
        yield ac


@pytest.fixture
async def seed_org(session_factory: async_sessionmaker[AsyncSession]) -> dict[str, Any]:
    """Create a provisioned user, their organization, and an active API key."""
    async with session_factory() as session:
        suffix = _uuid.uuid4().hex[:8]
        user_id = f"user_{suffix}"
        org = Organization(
            id=_uuid.uuid4(),
            name="Seed's Organization",
            slug=f"seed-s-organization-{suffix}",
            plan=PlanTier.FREE,
            owner_user_id=user_id,
        )
        session.add(org)
        await session.flush()

        user = User(id=user_id, name="Seed", email=f"seed-{suffix}@example.com", organization_id=org.id)
        session.add(user)

        raw_key = generate_key_value(org.id)
        api_key = ApiKey(
            id=_uuid.uuid4(),
            key=raw_key,
            name="Default API Key",
            organization_id=org.id,
            is_active=True,
            is_default=True,
        )
        session.add(api_key)
        await session.commit()

        return {
            "user_id": user_id,
            "org": org,
            "api_key": api_key,
            "raw_key": raw_key,
            "headers": bearer(user_id, name="Seed"),
        }
