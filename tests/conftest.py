"""pytest fixtures for promptforge tests.

Provides:
- database_url: Function-scoped database (SQLite file by default, PostgreSQL on demand)
- session_factory / uow_factory: Session and UnitOfWork factories with the schema created
- ledger: CreditLedger over the test database
- fake_transport: Scripted provider transport shared by every route
- adapter: DispatchAdapter with the catalog plus the cheap "test-image" model
- events / orchestrator: Recording event publisher and orchestrator with no-op sleeps

Set TEST_DATABASE_URL to run against an existing database, or
PROMPTFORGE_TEST_POSTGRES=1 to start a PostgreSQL testcontainer.
"""

import asyncio
import os
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import SQLModel

import promptforge.models  # noqa: F401
from promptforge.core.config import Settings
from promptforge.core.database import create_schema, setup_db_session
from promptforge.services.batch.orchestrator import BatchJobOrchestrator
from promptforge.services.dispatch.adapter import DispatchAdapter, build_default_adapter
from promptforge.services.dispatch.catalog import ProviderModelDescriptor
from promptforge.services.dispatch.routes import route_for
from promptforge.services.events import EventPublisher
from promptforge.services.ledger import CreditLedger
from promptforge.uow import create_uow_factory

TEST_MODEL = ProviderModelDescriptor(
    key="test-image",
    name="Test Image",
    provider_id="replicate",
    media_type="image",
    provider_model="acme/test-image",
    credit_cost=2,
    max_concurrency_hint=4,
)

ASSET_URL = "https://cdn.example.com/asset.png"


async def no_sleep(delay: float) -> None:
    """Stand-in for asyncio.sleep that only yields to the event loop."""
    await asyncio.sleep(0)


class FakeTransport:
    """Transport returning scripted results.

    Each call pops the next entry of ``responses`` (an exception instance is
    raised, anything else is returned) and falls back to ``default``. When
    ``gate`` is set, calls wait on it before answering.
    """

    def __init__(self, default: Any = ASSET_URL):
        self.default = default
        self.responses: list[Any] = []
        self.calls: list[tuple[Any, Any]] = []
        self.gate: asyncio.Event | None = None

    async def send(self, endpoint, payload):
        self.calls.append((endpoint, payload))
        if self.gate is not None:
            await self.gate.wait()
        response = self.responses.pop(0) if self.responses else self.default
        if isinstance(response, BaseException):
            raise response
        return response


class EventRecorder:
    """Event handler keeping every published event."""

    def __init__(self):
        self.events: list[tuple[str, dict[str, Any]]] = []

    async def __call__(self, name: str, payload: dict[str, Any]) -> None:
        self.events.append((name, payload))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


@pytest.fixture(scope="session")
def postgres_url():
    """Session-scoped PostgreSQL testcontainer URL, or None when not requested."""
    if os.environ.get("TEST_DATABASE_URL"):
        yield os.environ["TEST_DATABASE_URL"]
        return
    if os.environ.get("PROMPTFORGE_TEST_POSTGRES") != "1":
        yield None
        return

    from testcontainers.postgres import PostgresContainer

    with PostgresContainer(
        image="postgres:17",
        username="test",
        password="test",
        dbname="test_promptforge",
    ) as container:
        yield container.get_connection_url(driver="psycopg")


@pytest.fixture
def database_url(postgres_url, tmp_path) -> str:
    if postgres_url:
        return postgres_url
    return f"sqlite+aiosqlite:///{tmp_path / 'promptforge.db'}"


@pytest.fixture
def settings(database_url) -> Settings:
    return Settings(
        _env_file=None,  # type: ignore[call-arg]
        DATABASE_URL=database_url,
        DB_POOL_SIZE=5,
        APP_ENV="test",
        REPLICATE_API_TOKEN="r8_test",
        OPENAI_API_KEY="sk-test",
        BATCH_WORKER_POOL_SIZE=1,
        DISPATCH_MAX_ATTEMPTS=3,
        ORCHESTRATOR_MAX_ITEM_RETRIES=3,
        WELCOME_CREDITS=10,
    )


@pytest_asyncio.fixture
async def session_factory(settings) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session factory over a freshly created schema."""
    factory = setup_db_session(settings.database_url, settings.db_pool_size)
    engine = factory.kw["bind"]

    if engine.dialect.name != "sqlite":
        # Shared server database: start every test from empty tables
        async with engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.drop_all)
    await create_schema(factory)

    yield factory

    await engine.dispose()


@pytest.fixture
def uow_factory(session_factory):
    return create_uow_factory(session_factory)


@pytest.fixture
def ledger(uow_factory) -> CreditLedger:
    return CreditLedger(uow_factory)


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def adapter(settings, fake_transport) -> DispatchAdapter:
    adapter = build_default_adapter(
        settings,
        transports={"replicate": fake_transport, "http": fake_transport},
        sleep=no_sleep,
    )
    adapter.register(route_for(TEST_MODEL))
    return adapter


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def events(recorder) -> EventPublisher:
    return EventPublisher([recorder])


@pytest_asyncio.fixture
async def orchestrator(uow_factory, ledger, adapter, events, settings):
    orchestrator = BatchJobOrchestrator(
        uow_factory, ledger, adapter, events, settings, sleep=no_sleep
    )
    yield orchestrator
    await orchestrator.shutdown()
    await events.drain()
