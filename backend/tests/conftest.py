"""
Pytest configuration and fixtures for Athena gateway tests.

Database-backed tests run against in-memory SQLite (aiosqlite). The app's
``get_db`` / ``get_session_factory`` / ``get_vault`` dependencies are
overridden so no PostgreSQL server is needed.
"""

import os

# Must be set before the app's settings are imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("API_BASE_URL", "http://test/api")

from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.api.main import app
from app.core.models import ProviderKind
from app.db.database import Base, get_db, get_session_factory
from app.db.models import AIConfigurationModel, APIRegistrationModel, SystemPromptModel
from app.services.ai.encryption import CredentialVault, get_vault
from app.services.registration_service import generate_api_key

TEST_ENCRYPTION_KEY = "test-encryption-key"
USER_ID = "user-1"
OTHER_USER_ID = "user-2"


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault(TEST_ENCRYPTION_KEY)


@pytest_asyncio.fixture(scope="function")
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    vault: CredentialVault,
) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client against the app with test database and vault."""

    async def _get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_vault] = lambda: vault

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def user_headers() -> dict[str, str]:
    return {"X-User-Id": USER_ID}


# ============================================================================
# Factories
# ============================================================================


@pytest.fixture
def make_configuration(
    db_session: AsyncSession, vault: CredentialVault
) -> Callable[..., Awaitable[AIConfigurationModel]]:
    async def _make(
        provider: ProviderKind = ProviderKind.HTTP_API,
        settings: dict[str, Any] | None = None,
        name: str = "Test Config",
        user_id: str = USER_ID,
        is_active: bool = True,
        encrypt: bool = True,
    ) -> AIConfigurationModel:
        if settings is None:
            settings = {
                "baseUrl": "http://upstream.test/v1",
                "apiKey": "sk-upstream-secret",
                "model": "test-model",
                "temperature": 0.7,
            }
        config = AIConfigurationModel(
            user_id=user_id,
            name=name,
            provider=provider.value,
            settings=vault.encrypt_sensitive_fields(provider, settings) if encrypt else settings,
            is_active=is_active,
        )
        db_session.add(config)
        await db_session.commit()
        return config

    return _make


@pytest.fixture
def make_prompt(db_session: AsyncSession) -> Callable[..., Awaitable[SystemPromptModel]]:
    async def _make(
        content: str = "You are a helpful assistant.",
        category: str = "Custom",
        json_schema: list[dict] | None = None,
        user_id: str = USER_ID,
    ) -> SystemPromptModel:
        prompt = SystemPromptModel(
            user_id=user_id,
            title="Test Prompt",
            category=category,
            content=content,
            json_schema=json_schema,
        )
        db_session.add(prompt)
        await db_session.commit()
        return prompt

    return _make


@pytest.fixture
def make_registration(db_session: AsyncSession) -> Callable[..., Awaitable[APIRegistrationModel]]:
    async def _make(
        configuration: AIConfigurationModel,
        system_prompt: SystemPromptModel | None = None,
        is_active: bool = True,
        user_id: str = USER_ID,
    ) -> APIRegistrationModel:
        registration = APIRegistrationModel(
            user_id=user_id,
            name="Test API",
            description="Registration under test",
            base_url="http://test/api/external/pending",
            api_key=generate_api_key(),
            configuration_id=configuration.id,
            system_prompt_id=system_prompt.id if system_prompt else None,
            is_active=is_active,
        )
        db_session.add(registration)
        await db_session.commit()
        return registration

    return _make
