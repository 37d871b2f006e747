from collections.abc import AsyncGenerator
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from api.config.settings import AuthMode, Settings, get_settings
from api.infra.database import Base, enable_sqlite_foreign_keys, get_session
from api.main import create_app

# Import models to ensure they're registered
from api.v1.infra.cache import models as cache_models  # noqa: F401
from api.v1.infra.jobs import models as job_models  # noqa: F401
from api.v1.infra.webhooks import models as webhook_models  # noqa: F401

SERVICE_TOKEN = "test-service-token"


@pytest.fixture
def test_settings(tmp_path, monkeypatch) -> Settings:
    """Settings for a throwaway SQLite database with dev header auth."""
    settings = Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'streamvibe.db'}",
        auth_mode=AuthMode.DEV,
        service_token=SERVICE_TOKEN,
        webhook_signing_secret=None,
    )
    # The auth dependency reads the module-level settings instance
    monkeypatch.setattr("api.v1.core.security.settings", settings)
    return settings


@pytest.fixture
async def test_engine(test_settings):
    """Create a test database engine with all tables."""
    engine = create_async_engine(test_settings.database_url, echo=False)
    enable_sqlite_foreign_keys(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def app(session_factory, test_settings):
    """Create a test FastAPI application bound to the test database."""
    app = create_app()

    async def override_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_settings] = lambda: test_settings

    yield app

    app.dependency_overrides.clear()


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def auth_headers():
    """Headers for the default test owner."""
    return {"X-User-ID": "user-alice", "X-Org-ID": "org-test"}


@pytest.fixture
def other_headers():
    """Headers for a second owner."""
    return {"X-User-ID": "user-bob", "X-Org-ID": "org-test"}


@pytest.fixture
def service_headers():
    """Service credentials used by workers and the maintenance scheduler."""
    return {"Authorization": f"Bearer {SERVICE_TOKEN}"}


@pytest.fixture
def owner_id():
    return uuid4()
