from collections.abc import AsyncGenerator
from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from sagaflow.capabilities.inventory import StockInventoryService
from sagaflow.capabilities.notification import NotificationService
from sagaflow.capabilities.payment import LedgerPaymentService
from sagaflow.capabilities.shipping import CarrierShippingService
from sagaflow.capabilities.storage import DocumentStorage
from sagaflow.database import Base
from sagaflow.main import app
from sagaflow.pipeline.stages import PipelineDefinition, RetryPolicy
from sagaflow.services.runtime import Runtime, build_runtime, get_runtime
from sagaflow.workflows.order import build_order_pipeline
import sagaflow.models  # noqa: F401 - register models with Base

from doubles import FAST, FAST_POLICIES

# In-memory SQLite shared across sessions via a single static connection
TEST_DATABASE_URL = "sqlite+aiosqlite://"


@pytest.fixture
async def sessions() -> AsyncGenerator[async_sessionmaker[AsyncSession]]:
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def storage(sessions: async_sessionmaker[AsyncSession]) -> DocumentStorage:
    return DocumentStorage(sessions, max_size_bytes=1024 * 1024)


@pytest.fixture
def payment() -> LedgerPaymentService:
    return LedgerPaymentService(credit_limits={"CUST-BROKE": Decimal("1.00")})


@pytest.fixture
def inventory() -> StockInventoryService:
    return StockInventoryService(stock={"SOLD-OUT": 0})


@pytest.fixture
def shipping() -> CarrierShippingService:
    return CarrierShippingService(blocked_regions={"atlantis"})


@pytest.fixture
def notifications() -> NotificationService:
    return NotificationService()


@pytest.fixture
def order_pipeline(
    payment: LedgerPaymentService,
    inventory: StockInventoryService,
    shipping: CarrierShippingService,
    notifications: NotificationService,
) -> PipelineDefinition:
    return build_order_pipeline(
        payment, inventory, shipping, notifications, policies=FAST_POLICIES
    )


@pytest.fixture
async def runtime(sessions: async_sessionmaker[AsyncSession]) -> AsyncGenerator[Runtime]:
    rt = build_runtime(
        sessions,
        policies=FAST_POLICIES,
        review_timeout_seconds=2.0,
        compensation_retry=FAST,
    )
    yield rt
    await rt.manager.shutdown()


@pytest.fixture
async def client(runtime: Runtime) -> AsyncGenerator[AsyncClient]:
    app.dependency_overrides[get_runtime] = lambda: runtime

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
