"""
Pytest configuration and fixtures.

Every test gets its own SQLite database file, so tests never share state and
concurrent sessions see real transaction isolation.
"""
import uuid
from typing import Any, AsyncGenerator, Dict

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from printflow.config import Settings
from printflow.core.designs import DesignStore
from printflow.core.orders import OrderService
from printflow.core.rate_limiter import RateLimiter, SqlRateLimitStore
from printflow.core.render_jobs import RenderOrchestrator
from printflow.core.users import UserDirectory
from printflow.core.webhooks import PaymentWebhookProcessor
from printflow.database.connection import (
    create_engine_from_settings,
    create_session_factory,
    init_db,
)
from printflow.database.models import Design, Template, User

TEMPLATE_DATA: Dict[str, Any] = {
    "canvas": {"x": 0, "y": 0, "width": 1000, "height": 1000},
    "safe_area": {"x": 50, "y": 50, "width": 900, "height": 900},
    "params": {
        "color": {"type": "string", "required": True, "enum": ["red", "blue", "black"]},
        "text": {"type": "string", "max_length": 20},
        "font_size": {"type": "integer", "min": 8, "max": 72},
    },
}

SHIPPING_ADDRESS: Dict[str, Any] = {
    "name": "Taro Yamada",
    "postal_code": "150-0001",
    "prefecture_name": "Tokyo",
    "city": "Shibuya-ku",
    "address_line": "1-2-3 Jingumae",
}


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'printflow_test.db'}",
        app_name="printflow-test",
        app_env="test",
        log_level="DEBUG",
        rate_limit_backend="database",
        render_output_dir=str(tmp_path / "renders"),
        render_max_attempts=3,
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """Create a test engine with all tables."""
    engine = create_engine_from_settings(test_settings)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def users(session_factory: async_sessionmaker[AsyncSession]) -> UserDirectory:
    return UserDirectory(session_factory)


@pytest.fixture
def designs(session_factory: async_sessionmaker[AsyncSession]) -> DesignStore:
    return DesignStore(session_factory)


@pytest.fixture
def renders(
    test_settings: Settings, session_factory: async_sessionmaker[AsyncSession]
) -> RenderOrchestrator:
    return RenderOrchestrator(session_factory, settings=test_settings)


@pytest.fixture
def orders(test_settings: Settings, session_factory: async_sessionmaker[AsyncSession]) -> OrderService:
    return OrderService(session_factory, settings=test_settings)


@pytest.fixture
def webhooks(
    test_settings: Settings, session_factory: async_sessionmaker[AsyncSession], orders: OrderService
) -> PaymentWebhookProcessor:
    return PaymentWebhookProcessor(session_factory, order_service=orders, settings=test_settings)


@pytest.fixture
def rate_limiter(session_factory: async_sessionmaker[AsyncSession]) -> RateLimiter:
    return RateLimiter(SqlRateLimitStore(session_factory), window_seconds=60)


@pytest_asyncio.fixture
async def user(users: UserDirectory) -> User:
    """A registered user."""
    result = await users.register_user("taro@example.com", "Taro Yamada")
    return result.user


@pytest_asyncio.fixture
async def template(session_factory: async_sessionmaker[AsyncSession]) -> Template:
    """An active T-shirt template priced at 3000."""
    template = Template(
        id=uuid.uuid4(),
        name="Classic T-shirt",
        category="apparel",
        base_unit_price=3000,
        template_data=TEMPLATE_DATA,
    )
    async with session_factory() as session, session.begin():
        session.add(template)
    return template


@pytest_asyncio.fixture
async def draft_design(designs: DesignStore, user: User, template: Template) -> Design:
    result = await designs.create_design(user.id, template.id, {"color": "red"})
    return result.design


@pytest_asyncio.fixture
async def ready_design(renders: RenderOrchestrator, designs: DesignStore, draft_design: Design) -> Design:
    """A design that has been rendered successfully."""
    await renders.submit(draft_design.id)
    job = await renders.claim("test-worker")
    await renders.complete(job.id, "https://cdn.example.com/renders/red.png")
    return await designs.get_design(draft_design.id)


@pytest_asyncio.fixture
async def client(
    test_settings: Settings, session_factory: async_sessionmaker[AsyncSession]
) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client."""
    from printflow.api.main import create_app

    app = create_app(test_settings, session_factory)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
