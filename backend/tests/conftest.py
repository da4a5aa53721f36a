"""Pytest configuration and fixtures.

Each test gets a file-backed SQLite database. Tests seed and inspect it
through a synchronous ``db`` session while the services under test use
async sessions on the same file.
"""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from api.helpers import get_sync_engine
from config import Settings
from database import Base, create_engine_for_url, get_db, make_session_factory
from integrations.provider_registry import ProviderRegistry
from main import app
from services.sync_engine import build_sync_engine
from services.sync_state import SyncState
from tests.fixtures import T0
from tests.fixtures.mocks import FakeClock, FakeProvider


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(name="db_path")
def db_path_fixture(tmp_path):
    return tmp_path / "test.db"


@pytest.fixture(name="db")
def db_fixture(db_path):
    """Synchronous session for seeding data and asserting on results."""
    engine = create_engine(f"sqlite:///{db_path}", poolclass=NullPool)

    @event.listens_for(engine, "connect")
    def _set_wal(dbapi_conn, connection_record):
        dbapi_conn.execute("PRAGMA journal_mode=WAL")

    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture(name="session_factory")
def session_factory_fixture(db_path, db):
    """Async session factory on the same database file as ``db``."""
    engine = create_engine_for_url(f"sqlite+aiosqlite:///{db_path}", poolclass=NullPool)
    return make_session_factory(engine)


@pytest.fixture(name="clock")
def clock_fixture():
    return FakeClock(T0)


@pytest.fixture(name="plaid")
def plaid_fixture():
    return FakeProvider("plaid")


@pytest.fixture(name="coinbase")
def coinbase_fixture():
    return FakeProvider("coinbase", supports_transactions=False)


@pytest.fixture(name="registry")
def registry_fixture(plaid, coinbase):
    registry = ProviderRegistry()
    registry.register_provider(plaid)
    registry.register_provider(coinbase)
    return registry


@pytest.fixture(name="state")
def state_fixture(clock):
    return SyncState(clock=clock)


@pytest.fixture(name="test_settings")
def test_settings_fixture(tmp_path):
    return Settings(
        BACKUP_DIR=str(tmp_path / "backups"),
        SCHEDULER_ENABLED=False,
        PLAID_CLIENT_ID="test-client-id",
        PLAID_SECRET="test-secret",
    )


@pytest.fixture(name="sync_engine")
def sync_engine_fixture(session_factory, registry, state, test_settings):
    """Fully wired SyncEngine; the sampled transaction sync never fires."""
    return build_sync_engine(
        session_factory,
        registry=registry,
        settings=test_settings,
        state=state,
        random_source=lambda: 1.0,
    )


@pytest.fixture(name="client")
def client_fixture(session_factory, sync_engine):
    """Create a test client wired to the test database and fake providers."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_sync_engine] = lambda: sync_engine
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()
