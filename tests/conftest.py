"""Shared test fixtures for the programs scheduler."""
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from config.settings import SchedulerConfig
from database.store_memory import InMemoryProgramsStore
from gateway.notifications import LoggingNotificationGateway

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock shared by stores and dispatchers."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store(clock) -> InMemoryProgramsStore:
    store = InMemoryProgramsStore(clock=clock)
    store.add_program("program_1")
    store.add_user("admin_01")
    store.add_user("writer_01")
    store.add_user("writer_02")
    return store


@pytest.fixture
def gateway() -> LoggingNotificationGateway:
    return LoggingNotificationGateway()


@pytest.fixture
def scheduler_config() -> SchedulerConfig:
    return SchedulerConfig(enabled=False, interval_ms=50)


async def _open_sql_store(db_url: str, clock):
    from database.models import AppUserRow, ProgramRow
    from database.session import create_engine_for, create_session_factory, create_tables
    from database.store import SqlProgramsStore

    engine = create_engine_for(db_url)
    await create_tables(engine)
    factory = create_session_factory(engine)

    async with factory() as db:
        db.add(ProgramRow(id="program_1", slug="screenwriting-lab", title="Screenwriting Lab"))
        for user_id in ("admin_01", "writer_01", "writer_02"):
            db.add(AppUserRow(id=user_id, display_name=user_id))
        await db.commit()

    return engine, SqlProgramsStore(session_factory=factory, clock=clock)


@pytest_asyncio.fixture
async def sql_store(clock):
    """SqlProgramsStore over an in-memory SQLite database, seeded like memory_store."""
    engine, store = await _open_sql_store("sqlite://", clock)
    yield store
    await engine.dispose()


@pytest_asyncio.fixture
async def file_sql_store(tmp_path, clock):
    """Same seed over a file-backed SQLite database: one connection per session."""
    engine, store = await _open_sql_store(f"sqlite:///{tmp_path / 'programs.db'}", clock)
    yield store
    await engine.dispose()


@pytest.fixture
def seed(sql_store):
    """Insert collaborator-owned ORM rows through the store's own session factory."""
    from database.session import get_session

    async def _seed(*rows) -> None:
        async with get_session(sql_store._session_factory) as db:
            for row in rows:
                db.add(row)

    return _seed


@pytest.fixture
def store_fixture(request):
    """Set up the named async store fixture outside the running loop; yield its name."""
    request.getfixturevalue(request.param)
    return request.param
