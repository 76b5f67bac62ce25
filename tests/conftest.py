import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from postora.main import app
from postora.models import Base
from postora.services.credit_service import CreditService
from postora.services.entitlement_reconciler import EntitlementReconciler
from postora.services.ledger_store import LedgerStore


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def client():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
async def session_factory(tmp_path):
    """A file-backed SQLite database with the full schema.

    Every transaction starts with BEGIN IMMEDIATE so concurrent writers
    queue on the database lock instead of deadlocking on an upgrade.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def store(session_factory):
    return LedgerStore(session_factory, min_wait=0.001, max_wait=0.01)


@pytest.fixture
def credits(store):
    return CreditService(store)


@pytest.fixture
def reconciler(credits, session_factory):
    return EntitlementReconciler(credits, session_factory)
