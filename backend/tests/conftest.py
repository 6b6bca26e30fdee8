import asyncio
import sys
from datetime import date, datetime, time, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def ensure_event_loop() -> asyncio.AbstractEventLoop:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

    if loop.is_closed():
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

    return loop


ensure_event_loop()

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from booking_core.domain.bookings import db_models as booking_db_models  # noqa: F401
from booking_core.domain.bookings.statuses import BookingStatus
from booking_core.domain.ops import db_models as ops_db_models  # noqa: F401
from booking_core.domain.rescheduling import db_models as rescheduling_db_models  # noqa: F401
from booking_core.domain.service_blocks import db_models as service_block_db_models  # noqa: F401
from booking_core.domain.time_slots import db_models as time_slot_db_models  # noqa: F401
from booking_core.infra.db import Base, get_db_session
from booking_core.infra.metrics import metrics
from booking_core.infra.notifications import InMemoryNotificationSink
from booking_core.infra.providers import InMemoryProviderDirectory
from booking_core.main import app
from booking_core.services import AppServices
from booking_core.settings import settings

# 2025-01-09 12:00 in Asia/Dhaka; the default request date below is the next local day.
NOW = datetime(2025, 1, 9, 6, 0, tzinfo=timezone.utc)
REQUEST_DATE = date(2025, 1, 10)
PROVIDER_ID = "provider-a"
SERVICE_ID = "service-1"
USER_ID = "user-1"


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture(scope="session")
def test_engine(tmp_path_factory):
    db_path = tmp_path_factory.mktemp("db") / "test.db"
    # NullPool: every session opens its own connection on the running loop, so sessions
    # can be used concurrently and across asyncio.run calls.
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": 30},
        poolclass=NullPool,
    )

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture(scope="session")
def async_session_maker(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture(autouse=True)
def clean_database(test_engine):
    async def truncate_tables() -> None:
        async with test_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                await conn.execute(table.delete())

    asyncio.run(truncate_tables())
    yield


@pytest.fixture(autouse=True)
def restore_settings():
    original = settings.model_dump()
    yield
    for key, value in original.items():
        setattr(settings, key, value)


@pytest.fixture(autouse=True)
def enable_test_mode():
    settings.testing = True
    settings.app_env = "dev"
    settings.local_timezone = "Asia/Dhaka"
    yield


@pytest.fixture()
def notifier() -> InMemoryNotificationSink:
    return InMemoryNotificationSink()


@pytest.fixture()
def directory() -> InMemoryProviderDirectory:
    providers = InMemoryProviderDirectory()
    providers.register(PROVIDER_ID, working_hours="09:00-18:00")
    providers.register("provider-b", working_hours="8:00 AM - 8:00 PM")
    return providers


@pytest.fixture()
def booking_factory(async_session_maker):
    """Insert a booking row directly, bypassing intake validation."""

    async def _create(**overrides) -> booking_db_models.Booking:
        values = {
            "service_id": SERVICE_ID,
            "user_id": USER_ID,
            "provider_id": PROVIDER_ID,
            "status": BookingStatus.PENDING_PROVIDER_REVIEW.value,
            "requested_date": REQUEST_DATE,
            "requested_start_time": time(14, 0),
            "requested_end_time": time(16, 0),
            "created_at": NOW,
            "updated_at": NOW,
            "review_requested_at": NOW,
        }
        values.update(overrides)
        async with async_session_maker() as session:
            booking = booking_db_models.Booking(**values)
            session.add(booking)
            await session.commit()
            return booking

    return _create


@pytest.fixture()
def slot_factory(async_session_maker):
    async def _create(booking_id: str, start: datetime, end: datetime, **overrides):
        values = {
            "provider_id": PROVIDER_ID,
            "booking_id": booking_id,
            "start_at": start,
            "end_at": end,
            "is_active": True,
        }
        values.update(overrides)
        async with async_session_maker() as session:
            slot = time_slot_db_models.TimeSlot(**values)
            session.add(slot)
            await session.commit()
            return slot

    return _create


def _override_db(async_session_maker):
    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    return override_db_session


def _install_state(async_session_maker, notifier, directory):
    original = {
        "services": getattr(app.state, "services", None),
        "db_session_factory": getattr(app.state, "db_session_factory", None),
    }
    app.dependency_overrides[get_db_session] = _override_db(async_session_maker)
    app.state.services = AppServices(notifier=notifier, directory=directory, metrics=metrics)
    app.state.db_session_factory = async_session_maker
    return original


def _restore_state(original) -> None:
    app.dependency_overrides.clear()
    app.state.services = original["services"]
    app.state.db_session_factory = original["db_session_factory"]


@pytest.fixture()
def client(async_session_maker, notifier, directory):
    ensure_event_loop()
    original = _install_state(async_session_maker, notifier, directory)
    with TestClient(app) as test_client:
        yield test_client
    _restore_state(original)


@pytest.fixture()
def client_no_raise(async_session_maker, notifier, directory):
    """Test client that returns HTTP responses instead of raising server exceptions."""
    original = _install_state(async_session_maker, notifier, directory)
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    _restore_state(original)
